"""
NAS Admin module.

Operator CLI that works directly on the controller's data directory.
"""
