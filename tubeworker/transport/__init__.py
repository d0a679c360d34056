"""
Transport layer.
"""

from tubeworker.transport.connection import Connection

__all__ = ["Connection"]
