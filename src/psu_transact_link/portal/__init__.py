from .browser import BrowserFactory, BrowserSessionHandle
from .landing import PortalLandingResolver
from .login import ApprovalProbe, CredentialSubmitter, LoginOutcome, PortalCredentials
from .mfa import extract_number_match_code, read_number_match_code
from .race import RaceTimeout, race_first
from .transactions import TransactionExtractor, parse_transaction_table

__all__ = [
    "BrowserFactory",
    "BrowserSessionHandle",
    "PortalLandingResolver",
    "ApprovalProbe",
    "CredentialSubmitter",
    "LoginOutcome",
    "PortalCredentials",
    "extract_number_match_code",
    "read_number_match_code",
    "RaceTimeout",
    "race_first",
    "TransactionExtractor",
    "parse_transaction_table",
]
