"""audit/ -- Append-only security event log for authguard.

Layer rule: audit/ imports only core/ plus stdlib and third-party libraries.
auth/ and api/ write events through audit.trail.AuditTrail; audit/ never
imports them back.
"""
