"""Connectors package."""
from kbsync.connectors.base import SourceAdapter
from kbsync.connectors.registry import ADAPTER_REGISTRY, AdapterFactory, adapter_factory_for, get_adapter

__all__ = ["SourceAdapter", "ADAPTER_REGISTRY", "AdapterFactory", "adapter_factory_for", "get_adapter"]
