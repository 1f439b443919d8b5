"""
dbplane - resilience layer for a remote database control/data plane.

Layers (leaves first):
- dbplane.core:       errors, structured logging, settings
- dbplane.execution:  token-bucket rate limiting, retry driver
- dbplane.rpc:        call contexts, long-running-operation resumption,
                      executor/watchdog lifecycle, the DatabaseRpc facade
"""

__version__ = "0.1.0"
