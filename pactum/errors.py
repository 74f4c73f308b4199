"""Error taxonomy for pactum.

Every failure raised by the resolution, caching, integrity and signing pipeline
derives from :class:`PactumError`. None of these errors is retried
automatically; callers surface them as-is.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class PactumError(Exception):
    """Base class for all pactum errors."""
    pass


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------


class MalformedLocationError(PactumError):
    """A location string could not be parsed."""
    pass


class TooManyColonsError(MalformedLocationError):
    """An SSH-style location had more than ``host:port:path`` colons."""
    pass


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class CacheCorruptionError(PactumError):
    """The cache index and the cached content files disagree."""
    pass


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class TemplateError(PactumError):
    """Base class for template resolution problems."""
    pass


class TemplateNotFoundError(TemplateError):
    """The template file does not exist at its resolved location."""
    pass


class TemplateHashMismatchError(TemplateError):
    """The content hash of a loaded template differs from the pinned hash."""

    def __init__(self, source: str, expected: str, actual: str):
        super().__init__(
            f"template hash mismatch for {source}: expected {expected}, got {actual}"
        )
        self.source = source
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# External tools
# ---------------------------------------------------------------------------


class RepositoryOperationError(PactumError):
    """The repository-control tool exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        cwd: Optional[str] = None,
    ):
        where = f" (cwd: {cwd})" if cwd else ""
        msg = f"`{' '.join(command)}` exited with status {exit_code}{where}"
        detail = (stderr or stdout or "").strip()
        if detail:
            msg += f"\n{detail}"
        super().__init__(msg)
        self.command = list(command)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.cwd = cwd


class SigningError(PactumError):
    """Producing a signature failed."""
    pass


class SignatureVerificationError(PactumError):
    """One or more signatures failed verification.

    ``errors`` holds one message per problem found, so a single run reports
    every missing or invalid signature.
    """

    def __init__(self, errors: Sequence[str]):
        self.errors: List[str] = list(errors)
        if len(self.errors) == 1:
            msg = f"signature verification failed: {self.errors[0]}"
        else:
            lines = "\n".join(f"  - {e}" for e in self.errors)
            msg = f"signature verification failed with {len(self.errors)} error(s):\n{lines}"
        super().__init__(msg)


class CompilerError(PactumError):
    """The external document compiler failed."""
    pass


# ---------------------------------------------------------------------------
# Contract records
# ---------------------------------------------------------------------------


class ContractFormatError(PactumError):
    """A contract record is structurally invalid."""
    pass


class ContractMissingFieldError(ContractFormatError):
    def __init__(self, field_name: str):
        super().__init__(f'Missing field in contract: "{field_name}"')
        self.field_name = field_name


class CounterpartyMissingFieldError(ContractFormatError):
    def __init__(self, counterparty_id: str, field_name: str):
        super().__init__(f'Counterparty "{counterparty_id}" is missing field "{field_name}"')
        self.counterparty_id = counterparty_id
        self.field_name = field_name


class SignatoryMissingFieldError(ContractFormatError):
    def __init__(self, counterparty_id: str, signatory_id: str, field_name: str):
        super().__init__(
            f'Signatory "{signatory_id}" for counterparty "{counterparty_id}" '
            f'is missing field "{field_name}"'
        )
        self.counterparty_id = counterparty_id
        self.signatory_id = signatory_id
        self.field_name = field_name


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigError(PactumError):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass
