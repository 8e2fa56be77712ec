"""
checksync: checklist state with optional cloud synchronization.

Local-first persistence per signed-in identity, debounced pushes to a
two-endpoint remote store, and an observable sync status.
"""

import os

__version__ = "0.1.0"

CHECKSYNC_HOME = os.environ.get("CHECKSYNC_HOME", "~/.checksync")
