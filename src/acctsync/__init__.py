"""
acctsync - Account Source Directory Connector

Pulls organizational units and users from an external identity provider
(the "digital portal" API) and stages them in a buffer store for later
reconciliation into the canonical account system.

Copyright (c) 2025
Licensed under MIT License
"""

__version__ = "1.0.0"
__author__ = "acctsync Team"
__status__ = "Development"
