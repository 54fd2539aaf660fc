"""
OU Group Sync - Mirror directory organizational units as dynamic device groups.

This package reads organizational units from an LDAP directory and creates one
rule-based device group per unit in Microsoft Entra ID via Microsoft Graph.
"""

__version__ = "1.0.0"
__author__ = "OU Group Sync Team"
