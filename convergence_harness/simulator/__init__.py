"""Local stand-ins for the object store, the provider and the reconciler."""

from .models import make_session_factory
from .provider_logic import ProviderSettings
from .reconciler import ReferenceReconciler
from .rest_api_server import create_app

__all__ = ["make_session_factory", "ProviderSettings", "ReferenceReconciler", "create_app"]
