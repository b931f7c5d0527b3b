"""
Control-plane server.

The FastAPI application in ``app`` serves the desired-state store to operators,
host agents and build workers, renders Traefik configuration and ingests
GitHub webhooks.
"""
