"""
auth/codes.py -- One-time verification code generation.

Codes are six decimal digits drawn uniformly from [100000, 999999] so they
never carry a leading zero and always render at a fixed width. The source is
the secrets module (OS CSPRNG): it needs no seeding, holds no shared mutable
state, and is safe to call from any request thread.
"""

from __future__ import annotations

import secrets

CODE_MIN = 100_000
CODE_MAX = 999_999


class CodeGenerator:
    def generate(self) -> str:
        return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))
