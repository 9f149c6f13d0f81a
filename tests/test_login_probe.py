from __future__ import annotations

import asyncio

from psu_transact_link.config import PortalConfig
from psu_transact_link.portal.login import ApprovalProbe, CredentialSubmitter, PortalCredentials

from fakes import IDP_URL, LEDGER_URL, FakePage


def _probe(page: FakePage) -> ApprovalProbe:
    return asyncio.run(CredentialSubmitter(PortalConfig()).probe_approval(page))


def test_waiting_on_number_match_screen() -> None:
    page = FakePage(url=IDP_URL, text="Approve sign-in request. Enter the number 42 in your app.")
    assert _probe(page) is ApprovalProbe.WAITING


def test_approved_on_post_mfa_endpoint() -> None:
    page = FakePage(url="https://login.microsoftonline.com/common/SAS/ProcessAuth")
    assert _probe(page) is ApprovalProbe.APPROVED


def test_approved_when_redirected_off_identity_provider() -> None:
    assert _probe(FakePage(url=LEDGER_URL)) is ApprovalProbe.APPROVED
    assert _probe(FakePage(url="https://idp.example.edu/saml/acs")) is ApprovalProbe.APPROVED


def test_denied_text() -> None:
    page = FakePage(url=IDP_URL, text="Request denied. We didn't hear from you. Your request has been denied.")
    assert _probe(page) is ApprovalProbe.DENIED


def test_stay_signed_in_prompt_counts_as_approved() -> None:
    page = FakePage(url=IDP_URL, text="Stay signed in?", visible=("#idBtn_Back",))
    assert _probe(page) is ApprovalProbe.APPROVED


def test_credentials_repr_hides_password() -> None:
    creds = PortalCredentials(email="abc123@psu.edu", password="hunter2")
    assert "hunter2" not in repr(creds)
