"""
taskdesk organization core

Resolves the signed-in user's profile, lists the organizations they belong to
with their role, and provisions new organizations together with the owner
membership against a remote relational store.
"""

__version__ = "0.1.0"
