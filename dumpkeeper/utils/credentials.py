"""
Opaque credential handles.

The engine never stores raw secrets in its configuration. It receives
handles that point at the secret (``env:NAME`` or ``file:/path``) and
resolves them only at the moment a connection is opened. Handles never
show the secret in ``repr``/``str``, so they are safe to log.
"""

import os
from pathlib import Path
from typing import Optional


class CredentialError(Exception):
    """Raised when a credential handle cannot be resolved."""
    pass


class SecretHandle:
    """Reference to a secret held by an external provider."""

    def __init__(self, reference: str):
        """
        Args:
            reference: 'env:VARIABLE', 'file:/path/to/secret' or 'literal:value'
        """
        scheme, sep, target = reference.partition(':')
        if not sep or scheme not in ('env', 'file', 'literal') or not target:
            raise CredentialError("Credential reference must look like 'env:NAME', 'file:/path' or 'literal:value'")
        self._scheme = scheme
        self._target = target

    @classmethod
    def parse(cls, reference: Optional[str]) -> Optional['SecretHandle']:
        """Build a handle from an optional reference string."""
        if not reference:
            return None
        return cls(reference)

    @property
    def reference(self) -> str:
        """Reference string safe to persist (the literal value is masked)."""
        if self._scheme == 'literal':
            return 'literal:***'
        return f"{self._scheme}:{self._target}"

    def reveal(self) -> str:
        """
        Resolve the secret value.

        Raises:
            CredentialError: If the variable or file does not exist
        """
        if self._scheme == 'literal':
            return self._target

        if self._scheme == 'env':
            value = os.environ.get(self._target)
            if value is None:
                raise CredentialError(f"Environment variable not set: {self._target}")
            return value

        path = Path(self._target).expanduser()
        try:
            return path.read_text().strip()
        except OSError as e:
            raise CredentialError(f"Cannot read credential file {path}: {e.strerror}")

    def __repr__(self):
        return f"<SecretHandle {self.reference}>"

    __str__ = __repr__

    def __eq__(self, other):
        return isinstance(other, SecretHandle) and (self._scheme, self._target) == (other._scheme, other._target)

    def __hash__(self):
        return hash((self._scheme, self._target))
