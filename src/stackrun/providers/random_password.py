"""Random password generation.

The generated value is exposed as the ``result`` output and is always tagged
secret. Every spec field is replace-only: changing the length or alphabet
means a new password.
"""

from __future__ import annotations

import secrets
import string
from typing import Any

from stackrun.core.errors import ProviderError
from stackrun.engine.secrets import REDACTED
from stackrun.providers.base import BaseProviderAdapter, Outputs, ProviderResourceSchema
from stackrun.providers.registry import register_provider

DEFAULT_SPECIAL_CHARACTERS = "!@#$%&*()-_=+[]{}<>:?"


class RandomPasswordProvider(BaseProviderAdapter):
    kind = "random_password"
    description = "Randomly generated password, exposed as a secret"
    secret_outputs = frozenset({"result"})

    def schema(self) -> ProviderResourceSchema:
        return ProviderResourceSchema(
            name=self.kind,
            description=self.description,
            attributes={
                "length": "Password length (default 16)",
                "special": "Include special characters (default true)",
                "override_special": "Custom special character set",
                "upper": "Include upper-case letters (default true)",
                "numeric": "Include digits (default true)",
            },
        )

    async def create(self, spec: dict[str, Any]) -> Outputs:
        return {"result": generate_password(spec)}

    async def read(self, outputs: Outputs) -> Outputs:
        result = outputs.get("result")
        if result is None or result == REDACTED:
            raise ProviderError(
                "Generated password is not recoverable from state; "
                "keep the state key file or store state on a backend marked secure"
            )
        return dict(outputs)


def generate_password(spec: dict[str, Any]) -> str:
    length = int(spec.get("length", 16))
    if length < 1:
        raise ValueError("length must be at least 1")

    pools = [string.ascii_lowercase]
    if spec.get("upper", True):
        pools.append(string.ascii_uppercase)
    if spec.get("numeric", True):
        pools.append(string.digits)
    if spec.get("special", True):
        pools.append(spec.get("override_special") or DEFAULT_SPECIAL_CHARACTERS)

    alphabet = "".join(pools)
    # One character from each pool when the length allows it
    chars = [secrets.choice(pool) for pool in pools[:length]]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    for i in range(len(chars) - 1, 0, -1):
        j = secrets.randbelow(i + 1)
        chars[i], chars[j] = chars[j], chars[i]
    return "".join(chars)


register_provider(
    RandomPasswordProvider.kind,
    RandomPasswordProvider,
    version="1.0.0",
    description=RandomPasswordProvider.description,
)
