from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PortalSelectors:
    """
    The Microsoft sign-in pages and the Transact portal are third-party UIs; selectors may change over time.
    Keep all UI selectors/text hooks here for easy maintenance.
    """

    # Microsoft Entra ID sign-in (login.microsoftonline.com)
    email_input: str = 'input[type="email"], #i0116'
    password_input: str = 'input[type="password"], #i0118'
    submit_button: str = '#idSIButton9, button[type="submit"]'
    # "Stay signed in?" prompt: we always answer "No" so no long-lived IdP cookie is minted.
    stay_signed_in_no: str = "#idBtn_Back"
    otp_input: str = 'input[name="otc"], #idTxtBx_SAOTCC_OTC'
    # Inline error blocks shown under the e-mail / password field.
    credential_error: str = "#usernameError, #passwordError"

    # Lowercased body-text hints.
    push_indicator_texts: tuple[str, ...] = (
        "approve sign-in request",
        "enter the number",
        "use the microsoft authenticator",
    )
    push_waiting_texts: tuple[str, ...] = ("waiting for approval", "approve sign-in request")
    push_denied_texts: tuple[str, ...] = ("request has been denied", "authentication failed")
    invalid_credential_texts: tuple[str, ...] = (
        "your account or password is incorrect",
        "this username may be incorrect",
        "we couldn't find an account with that username",
        "that microsoft account doesn't exist",
        "enter a valid email address",
    )
    account_locked_texts: tuple[str, ...] = ("your account has been locked", "account is locked")

    # Transact ledger (AccountTransaction.aspx)
    ledger_grid: str = "#ctl00_MainContent_ResultRadGrid_ctl00"
    ledger_rows: str = "#ctl00_MainContent_ResultRadGrid_ctl00 tbody tr"
    ledger_ready: str = "#MainContent_ContinueButton"
    start_date_input: str = (
        '#ctl00_MainContent_StartDatePicker_dateInput, #StartDatePicker_dateInput, input[id*="StartDate"]'
    )
    end_date_input: str = '#ctl00_MainContent_EndDatePicker_dateInput, #EndDatePicker_dateInput, input[id*="EndDate"]'
    filter_submit: str = (
        '#MainContent_ContinueButton, #ctl00_MainContent_ContinueButton, input[value*="Continue"], '
        'button[type="submit"]'
    )
    no_results_texts: tuple[str, ...] = ("no transactions", "no records to display")
