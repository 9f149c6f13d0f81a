from __future__ import annotations

import asyncio

from psu_transact_link.portal.mfa import (
    DEFAULT_APPROVAL_INSTRUCTION,
    approval_instructions,
    extract_number_match_code,
    read_number_match_code,
)

from fakes import FakePage


def test_extract_code_prefers_phrase() -> None:
    text = "Approve sign-in request\nOpen your Authenticator app, and enter the number 73 to sign in. Ref 10"
    assert extract_number_match_code(text) == "73"


def test_extract_code_number_on_its_own_line() -> None:
    # Entra ID renders the number in its own block after the instruction.
    text = "Approve sign-in request\nOpen your Authenticator app, and enter the number shown to sign in.\n42\nNo numbers in your app?"
    assert extract_number_match_code(text) == "42"


def test_extract_code_ignores_hash_references_and_long_numbers() -> None:
    text = "Ticket #12 opened 2025. Your code appears below: 58"
    assert extract_number_match_code(text) == "58"


def test_extract_code_none_when_no_challenge() -> None:
    assert extract_number_match_code("Approve sign-in request in your app.") is None
    assert extract_number_match_code("") is None
    assert extract_number_match_code(None) is None


def test_approval_instructions() -> None:
    assert "42" in approval_instructions("42")
    assert approval_instructions(None) == DEFAULT_APPROVAL_INSTRUCTION


def test_read_number_match_code_from_page() -> None:
    page = FakePage(text="Enter the number 17 on your phone")
    assert asyncio.run(read_number_match_code(page)) == "17"


def test_read_number_match_code_page_error_is_none() -> None:
    class BrokenPage:
        async def evaluate(self, script: str) -> str:
            raise RuntimeError("Target closed")

    assert asyncio.run(read_number_match_code(BrokenPage())) is None
