"""Security module for secrets handling and masking."""

from .secrets import SecretsManager, SecretsMaskingFilter

__all__ = ['SecretsManager', 'SecretsMaskingFilter']
