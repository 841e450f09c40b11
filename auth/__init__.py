"""auth/ -- Authentication and account-security package for TodoMaster.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and
security/ (for event recording). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
