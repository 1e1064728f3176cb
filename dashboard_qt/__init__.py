"""PySide6 services that run the dashboard engine on a Qt event loop."""
