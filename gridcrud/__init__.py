from gridcrud.config import DbConfig, Settings
from gridcrud.dispatch import Dispatcher, Response, dispatch, is_action_request
from gridcrud.grid import ActionRejected, Grid, RecordNotFound
from gridcrud.hooks import formatter, register
from gridcrud.version import get_version

__version__ = get_version()

__all__ = [
    "ActionRejected",
    "DbConfig",
    "Dispatcher",
    "Grid",
    "RecordNotFound",
    "Response",
    "Settings",
    "dispatch",
    "formatter",
    "is_action_request",
    "register",
    "__version__",
]
