"""kitsync: keep distributed template files in sync with local customizations."""

__version__ = "0.1.0"
