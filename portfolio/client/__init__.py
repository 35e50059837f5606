# Client side of the portfolio sync layer
from .change_bus import ChangeBus
from .notifications import Notification, NotificationCenter
from .store_client import RemoteStoreClient, SaveResult, BulkSaveResult
from .autosave import AutosaveCoordinator, SaveState
from .realtime import RealtimeListener, SSEParser
from .session import PortfolioSession
from .forms import FormService

__all__ = [
    'ChangeBus',
    'Notification',
    'NotificationCenter',
    'RemoteStoreClient',
    'SaveResult',
    'BulkSaveResult',
    'AutosaveCoordinator',
    'SaveState',
    'RealtimeListener',
    'SSEParser',
    'PortfolioSession',
    'FormService',
]
