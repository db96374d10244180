"""
Backup module for yback.

This module handles the core backup functionality including:
- Recipe registry (device type -> backup recipe)
- Execution of recipes over SSH, HTTP or Telnet
- Replication of artifacts to storage providers
"""

from .recipes import resolve, list_supported_types, list_recipes, SSHRecipe, HTTPRecipe, TelnetRecipe
from .executor import BackupExecutor, ExecutionResult, Credentials, credentials_for
from .replication import ReplicationService

__all__ = [
    'resolve',
    'list_supported_types',
    'list_recipes',
    'SSHRecipe',
    'HTTPRecipe',
    'TelnetRecipe',
    'BackupExecutor',
    'ExecutionResult',
    'Credentials',
    'credentials_for',
    'ReplicationService'
]
