"""
Workspace entitlements.

Answers "may this workspace use feature X right now, and how much is left?"
from the packages and boosts the workspace holds and the usage it has
recorded in the current reset window.
"""

__version__ = "0.1.0"
