from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PortalSelectors:
    """
    The GST portal is an Angular SPA whose markup changes without notice.
    Keep all UI selectors/text hooks here for easy maintenance.
    """

    # Login
    username_input: str = "#username"
    password_input: str = "#user_pass"
    captcha_input: str = "#captcha"
    captcha_frame_url_hints: tuple[str, ...] = ("login", "captcha")
    captcha_image: tuple[str, ...] = (
        "#captchaImg",
        "img#captchaImg",
        'img[alt*="captcha" i]',
        'img[src*="captcha" i]',
    )
    captcha_canvas: str = "canvas"
    captcha_refresh: tuple[str, ...] = (
        "#captchaReload",
        '[title*="Refresh" i]',
        '[aria-label*="Refresh" i]',
        "text=Refresh",
    )
    login_submit: tuple[str, ...] = (
        'button[type=submit].btn-primary:has-text("Login")',
        'button.btn-primary:has-text("Login")',
        'button:has-text("Login")',
        "text=Login",
        "form button[type=submit]",
    )
    login_button_visible: str = 'button:has-text("Login")'
    # Rendered error messages on the login form ("Invalid Username or Password", "Enter valid Letters shown").
    login_error_containers: str = ".alert-danger, .error, .text-danger, span.err, p.err"
    login_error_hint: str = r"invalid|enter valid|error|failed|incorrect|password"

    # Post-login
    dashboard_indicator: str = r"RETURN\s+DASHBOARD"
    dashboard_entry: tuple[str, ...] = (
        "text=/RETURN\\s+DASHBOARD/i",
        'a:has-text("Return Dashboard")',
        'button:has-text("Return Dashboard")',
        'a[href*="returns/dashboard" i]',
    )

    # Return period dropdowns: financial year, quarter, month (in DOM order).
    period_select: str = "select"
    search_button: tuple[str, ...] = (
        'button:has-text("Search")',
        "text=/^\\s*SEARCH\\s*$/i",
        'input[type=button][value*="Search" i]',
    )

    # Results tiles: several identical DOWNLOAD buttons (GSTR-1, GSTR-2A, GSTR-2B, GSTR-3B...).
    document_action_buttons: str = 'button:has-text("DOWNLOAD"), button:has-text("Download")'
    document_context_levels: int = 6

    # Document page
    generate_buttons: tuple[str, ...] = (
        'button:has-text("GENERATE EXCEL FILE TO DOWNLOAD")',
        'button:has-text("GENERATE EXCEL")',
        "text=/GENERATE\\s+EXCEL\\s+FILE\\s+TO\\s+DOWNLOAD/i",
        "text=/GENERATE\\s+EXCEL\\s+FILE/i",
    )
    generate_fallback_text: str = "GENERATE"
    secondary_download_buttons: tuple[str, ...] = (
        'button:has-text("DOWNLOAD EXCEL")',
        'button:has-text("CLICK HERE TO DOWNLOAD")',
        'button:has-text("DOWNLOAD")',
        'a:has-text("DOWNLOAD")',
        'button:has-text("CLICK TO DOWNLOAD")',
        'a[href*="download"]',
    )
    failure_text: str = r"not generated|being generated|should be available|error|failed"
