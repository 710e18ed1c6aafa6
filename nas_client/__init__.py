"""
NAS Client module.

Thin requests-based client for the controller's REST API plus the "nas"
command line tool.
"""
