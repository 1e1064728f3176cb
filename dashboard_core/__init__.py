"""Dashboard state engine.

This package holds the UI-free core (datasets, widgets, layout, history,
persistence) so it can be imported and tested without Qt.
"""

from __future__ import annotations
