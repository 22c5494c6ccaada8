"""Market-data provider connectors."""
from .dhan_client import DhanClient

__all__ = ['DhanClient']
