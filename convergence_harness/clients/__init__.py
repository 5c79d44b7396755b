from .base import ApiClient, raise_for_status
from .provider_client import ProviderClient
from .store_client import ObjectKey, ObjectStoreClient

__all__ = ["ApiClient", "raise_for_status", "ObjectKey", "ObjectStoreClient", "ProviderClient"]
