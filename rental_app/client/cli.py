"""Interactive command line front-end: ``rental-client login`` / ``enroll``."""
from __future__ import annotations

import logging

import click

from .auth import AuthService, AuthState, LoginStatus
from .http import ApiClient, Err, Ok
from .two_factor import SetupStep, TwoFactorSetupWizard

logger = logging.getLogger(__name__)


def _step_up(service: AuthService) -> bool:
    """Prompt for the second factor until it succeeds or the user gives up."""
    challenge = service.state.pending_challenge
    click.echo(f"Two-factor verification required for {challenge.username}.")
    while service.state.pending_challenge is not None:
        use_backup = click.confirm("Use a backup code instead of the authenticator?", default=False)
        prompt = "Backup code" if use_backup else "6-digit code"
        token = click.prompt(prompt, default="", show_default=False)
        if not token:
            service.abandon_challenge()
            click.echo("Verification abandoned.")
            return False
        outcome = service.verify_step_up(token, use_backup_code=use_backup)
        if outcome.status is LoginStatus.AUTHENTICATED:
            return True
        click.secho(outcome.message or "Verification failed.", fg="red")
    return False


def _renew_expired_password(service: AuthService, current_password: str) -> bool:
    click.secho("Your password has expired and must be changed.", fg="yellow")
    while True:
        new_password = click.prompt("New password", hide_input=True, confirmation_prompt=True)
        result = service.change_password(current_password, new_password)
        if isinstance(result, Ok):
            click.secho("Password changed.", fg="green")
            return True
        click.secho(result.message if isinstance(result, Err) else "Password change failed.", fg="red")
        if not click.confirm("Try another password?", default=True):
            return False


def _login(service: AuthService, username: str, password: str) -> bool:
    outcome = service.login(username, password)
    if outcome.status is LoginStatus.CHALLENGE:
        if not _step_up(service):
            return False
    elif outcome.status is not LoginStatus.AUTHENTICATED:
        click.secho(outcome.message or "Login failed.", fg="red")
        return False
    principal = service.state.principal
    click.secho(f"Signed in as {principal.username} ({principal.role}).", fg="green")
    if principal.password_expired and not _renew_expired_password(service, password):
        service.logout()
        return False
    if principal.two_factor_setup_required:
        click.echo("Two-factor authentication is required by policy: run `rental-client enroll`.")
    return True


def _enroll(wizard: TwoFactorSetupWizard) -> bool:
    wizard.start()
    while wizard.step is SetupStep.FAILED:
        click.secho(wizard.error or "Setup failed.", fg="red")
        if not click.confirm("Retry?", default=True):
            wizard.cancel()
            return False
        wizard.retry_setup()
    if wizard.step is not SetupStep.AWAITING_CODE:
        click.secho("Please log in first.", fg="red")
        return False

    ascii_qr = wizard.qr_ascii()
    if ascii_qr:
        click.echo(ascii_qr)
    click.echo("Scan the QR code with your authenticator app, or enter this key manually:")
    click.secho(f"  {wizard.secret}", bold=True)

    while wizard.step is SetupStep.AWAITING_CODE:
        raw = click.prompt("Code from the app (empty to cancel)", default="", show_default=False)
        if not raw:
            wizard.cancel()
            click.echo("Setup cancelled.")
            return False
        wizard.enter_code(raw)
        if not wizard.can_submit:
            click.secho("The code must be exactly 6 digits.", fg="red")
            continue
        if not wizard.submit_code():
            click.secho(wizard.error or "Invalid code.", fg="red")

    click.echo("Backup codes (shown only once, each works a single time):")
    for index, code in enumerate(wizard.backup_codes, start=1):
        click.echo(f"  {index:>2}. {code}")
    while not click.confirm("Have you saved the backup codes?", default=False):
        click.echo("Store them somewhere safe before continuing.")
    wizard.acknowledge()
    click.secho("Two-factor authentication enabled.", fg="green")
    return True


@click.group()
@click.option("--base-url", envvar="RENTAL_BASE_URL", default="http://localhost:5000", show_default=True)
@click.option("--timeout", default=10.0, show_default=True, help="Request timeout in seconds.")
@click.option("-v", "--verbose", is_flag=True, help="Log HTTP traffic.")
@click.pass_context
def main(ctx: click.Context, base_url: str, timeout: float, verbose: bool):
    """Client for the rental management API."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="[%(asctime)s] %(levelname)s in %(module)s: %(message)s",
    )
    api = ApiClient(base_url, timeout=timeout)
    ctx.obj = AuthService(api, AuthState())


@main.command()
@click.option("--username", prompt=True)
@click.password_option(confirmation_prompt=False)
@click.pass_obj
def login(service: AuthService, username: str, password: str):
    """Sign in, answering the second-factor challenge when asked."""
    if not _login(service, username, password):
        raise click.exceptions.Exit(1)
    service.logout()


@main.command()
@click.option("--username", prompt=True)
@click.password_option(confirmation_prompt=False)
@click.pass_obj
def enroll(service: AuthService, username: str, password: str):
    """Sign in and enable two-factor authentication for the account."""
    if not _login(service, username, password):
        raise click.exceptions.Exit(1)
    try:
        wizard = TwoFactorSetupWizard(service.api, service.state)
        if not _enroll(wizard):
            raise click.exceptions.Exit(1)
    finally:
        result = service.logout()
        if isinstance(result, Err):
            logger.warning("Logout failed: %s", result.message)


if __name__ == "__main__":
    main()
