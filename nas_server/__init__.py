"""
NAS Server module.

FastAPI boundary layer: REST and WebSocket API over the controller core,
session authentication, configuration and the process entry point.
"""
