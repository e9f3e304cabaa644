from .cache import OfflineCache
from .client import ApiClient, Cancelled, NetworkError, RejectedError
from .settings import OfflineSettings
from .sync import CancelToken, ConnectivityMonitor, SyncEngine
from .validator import OfflineValidator

__all__ = [
    'OfflineCache', 'ApiClient', 'Cancelled', 'NetworkError', 'RejectedError',
    'OfflineSettings', 'CancelToken', 'ConnectivityMonitor', 'SyncEngine', 'OfflineValidator',
]
