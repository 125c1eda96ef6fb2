"""auth/ -- Credentials, sessions and the login state machine for authguard.

Layer rule: auth/ may import core/, devices/, audit/ and notify/ (the engine
orchestrates them). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
