"""
Accounts cache: read-through caching of upstream billing and CRM data.
"""

__version__ = "1.0.0"
