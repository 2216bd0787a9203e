"""Service layer package for encapsulating business logic."""

from .errors import BorrowServiceError  # noqa: F401
from .authorization import Action, Actor, AuthorizationGate, resolve_actor  # noqa: F401
from .inventory import InventoryLedger  # noqa: F401
from .letters import LetterIssuer  # noqa: F401
from .notifications import Notifier  # noqa: F401
from .borrowing import BorrowService, Event  # noqa: F401
from .catalog import ItemService  # noqa: F401
from .directory import DirectoryService  # noqa: F401
from .auth import login_user, logout_user, login_required, get_current_user, get_current_actor  # noqa: F401
