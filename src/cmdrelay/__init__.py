"""cmdrelay -- TCP command relay for remote developer tooling.

This package accepts persistent TCP connections from remote agents
(tooling clients, test harnesses, device-debug bridges), runs the
commands they send against the host's local command-line tools, and
streams the results back over the same connection.
"""

__version__ = "0.1.0"
