# secrets.py
from __future__ import annotations

import os
from typing import Dict, Iterable, Iterator, Mapping, Optional, Sequence

from .errors import MISSING_SECRET, SecretError
from .model import SecretDeclaration, Step

REDACTED = "***"


class SecretResolver:
    """
    Resolves secret declarations from the host environment.

    The environment is read on every call, never cached, so a value rotated
    between runs is picked up by the next run.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def declarations_for(
        self, step: Step, declarations: Sequence[SecretDeclaration]
    ) -> list[SecretDeclaration]:
        """Secrets a step uses: its own `secrets` list, or all of them when unset."""
        if step.secrets is None:
            return list(declarations)
        by_name = {d.name: d for d in declarations}
        out = []
        for name in step.secrets:
            decl = by_name.get(name)
            if decl is None:
                raise SecretError(
                    kind=MISSING_SECRET,
                    message=f"Step '{step.name}' uses undeclared secret '{name}'",
                    details={"declared": sorted(by_name)},
                    name=name,
                )
            out.append(decl)
        return out

    def resolve(self, declarations: Iterable[SecretDeclaration]) -> Dict[str, str]:
        """
        Returns {logical name: value}.
        Raises SecretError for a required secret whose host variable is unset.
        """
        env = self.environ
        values: Dict[str, str] = {}
        for decl in declarations:
            value = env.get(decl.env_var)
            if value is None:
                if not decl.required:
                    continue
                raise SecretError(
                    kind=MISSING_SECRET,
                    message=f"Secret '{decl.name}' is not set: host variable {decl.env_var} is missing",
                    details={"env_var": decl.env_var},
                    name=decl.name,
                )
            values[decl.name] = value
        return values


class Redactor:
    """
    Replaces known secret values with *** in text and byte streams.

    Stream redaction keeps a short tail between chunks so a value split
    across two chunks is still caught.
    """

    def __init__(self, secrets: Iterable[str] = ()):
        # longest first so overlapping values redact fully
        values = sorted({s for s in secrets if s}, key=len, reverse=True)
        self._values = values
        self._raw = [v.encode("utf-8") for v in values]
        self._tail = max((len(b) for b in self._raw), default=1) - 1

    def __bool__(self) -> bool:
        return bool(self._values)

    def redact_text(self, s: str) -> str:
        for v in self._values:
            s = s.replace(v, REDACTED)
        return s

    def redact_bytes(self, b: bytes) -> bytes:
        for v in self._raw:
            b = b.replace(v, REDACTED.encode("ascii"))
        return b

    def redact_stream(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        if not self._raw:
            yield from chunks
            return

        carry = b""
        for chunk in chunks:
            buf = self.redact_bytes(carry + chunk)
            if self._tail and len(buf) > self._tail:
                carry = buf[-self._tail:]
                buf = buf[: -self._tail]
            elif self._tail:
                carry, buf = buf, b""
            if buf:
                yield buf
        if carry:
            yield self.redact_bytes(carry)
