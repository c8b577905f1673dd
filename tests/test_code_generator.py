"""
tests/test_code_generator.py -- Unit tests for auth/codes.py.

Covers:
  - Every code is exactly six decimal digits with no leading zero
  - Codes stay inside [CODE_MIN, CODE_MAX]
  - Generation is safe to call from many threads at once
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from auth.codes import CODE_MAX, CODE_MIN, CodeGenerator


def test_codes_are_six_digits() -> None:
    gen = CodeGenerator()
    for _ in range(500):
        code = gen.generate()
        assert len(code) == 6
        assert code.isdigit()
        assert code[0] != "0"


def test_codes_within_range() -> None:
    gen = CodeGenerator()
    values = [int(gen.generate()) for _ in range(500)]
    assert all(CODE_MIN <= v <= CODE_MAX for v in values)


def test_codes_vary() -> None:
    gen = CodeGenerator()
    assert len({gen.generate() for _ in range(50)}) > 1


def test_concurrent_generation() -> None:
    gen = CodeGenerator()
    with ThreadPoolExecutor(max_workers=8) as pool:
        codes = list(pool.map(lambda _: gen.generate(), range(200)))
    assert len(codes) == 200
    assert all(len(c) == 6 and c.isdigit() for c in codes)
