"""Identity and authentication core for the operations console.

Bridges the local credential store and an LDAP/Active Directory service.
"""

__version__ = "0.1.0"
