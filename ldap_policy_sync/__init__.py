"""
LDAP Policy Sync - Install documents and Rego policy modules held in an LDAP directory into a policy store.

This package connects to the directory, fetches document and policy entries,
compiles the policy set, and commits both atomically into a transactional store.
"""

__version__ = "1.0.0"
__author__ = "LDAP Sync Team"
