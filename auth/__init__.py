"""auth/ -- Credential verification, token issuance and role provisioning for keyfob.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/; settings values are passed in by the
caller. api/ imports from auth/, not the other way around.
"""
