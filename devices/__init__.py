"""devices/ -- Per-user device history and suspicious-login scoring for authguard.

Layer rule: devices/ imports only core/ plus stdlib and third-party libraries.
It does NOT import from api/, auth/, audit/, or notify/. The auth engine
calls into devices/, never the other way around.
"""
