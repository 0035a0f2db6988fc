"""
sccmkit Policy Subsystem

- PolicyResolver: assignment listing and policy body download
- extract_secrets: protected values of network access accounts, task
  sequences and collection variables
"""

from .models import PolicyAssignment, ProtectionContext, SecretBlob, SecretOrigin
from .resolver import (
    SECRET_CATEGORIES,
    PolicyResolver,
    extract_secrets,
    parse_assignments,
    select_secret_assignments,
)

__all__ = [
    "PolicyAssignment",
    "PolicyResolver",
    "ProtectionContext",
    "SecretBlob",
    "SecretOrigin",
    "SECRET_CATEGORIES",
    "extract_secrets",
    "parse_assignments",
    "select_secret_assignments",
]
