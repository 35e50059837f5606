"""
Portfolio sync: owner-scoped element store service and its autosaving client.
"""

from .core.config import VERSION

__version__ = VERSION
