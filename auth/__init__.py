"""auth/ -- Authentication, session revocation and role authorization for ClinicGate.

Layer rule: auth/ imports stdlib, third-party libraries and core/ (settings).
It does NOT import from api/.
api/ and main.py import from auth/, not the other way around.
"""
