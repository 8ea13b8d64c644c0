"""HTTP route modules mounted by server.py."""
