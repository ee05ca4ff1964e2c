"""HTTP status and admin API for cmdrelay.

Exposes the relay listeners' connection status and the broadcast admin
action over HTTP.
"""
