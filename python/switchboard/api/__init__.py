"""HTTP surface for the delegation core. Import ``switchboard.api.app`` for the ASGI app."""
