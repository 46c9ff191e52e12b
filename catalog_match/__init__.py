"""
catalog_match: recommends catalog items for free-text requests by similarity
to historical records resolved with those items.
"""

__version__ = "1.0.0"
