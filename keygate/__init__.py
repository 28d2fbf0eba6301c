"""
keygate: API-key admission control for a multi-tenant REST gateway

Architecture:
- CredentialStore: full-replace persistence of issued keys
- Key resolver: first-match extraction of a key from a request
- AdmissionGate: validate, meter and admit each request
- AdminService: privileged CRUD and usage statistics
"""

__version__ = "1.0.0"
