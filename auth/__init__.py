"""auth/ -- Credential and verification core for the account service.

Layer rule: auth/ imports stdlib, third-party libraries, core/ (config) and
cache/ (verification code storage). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
