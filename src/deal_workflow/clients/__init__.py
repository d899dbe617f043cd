"""
Data-source clients for the deal workflow core.
"""

from .memory_client import InMemoryDealSource
from .postgres_client import PostgresClient

__all__ = [
    'InMemoryDealSource',
    'PostgresClient',
]
