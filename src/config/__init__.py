"""
Configuration module.
"""

from .settings import Config, load_config_from_env_file
from .credentials import CredentialStore

__all__ = ['Config', 'load_config_from_env_file', 'CredentialStore']
