from __future__ import annotations

import click
from flask import current_app
from flask.cli import with_appcontext
from sqlalchemy.exc import IntegrityError

from . import db


@click.group("scheduler")
def scheduler_cli():
    """Scheduler related commands."""
    pass


@scheduler_cli.command("run")
@with_appcontext
def run_scheduler():
    """Run the dedicated scheduler process. Use in production as separate container or systemd service."""
    # Import lazily to avoid importing APScheduler at Flask startup when not needed
    from .scheduler import run

    current_app.logger.info("Starting scheduler via CLI")
    run()


@scheduler_cli.command("run-once")
@with_appcontext
def run_jobs_once():
    """Run every maintenance job once and exit."""
    from .jobs import run_due_jobs

    run_due_jobs()
    click.echo("Maintenance jobs completed")


@click.group("users")
def users_cli():
    """User administration commands."""
    pass


@users_cli.command("create-admin")
@click.argument("username")
@click.argument("email")
@click.password_option()
@with_appcontext
def create_admin(username: str, email: str, password: str):
    """Create an administrator account."""
    from .models import User, ROLE_ADMIN
    from .auth.passwords import apply_new_password

    user = User()
    user.username = username
    user.email = email
    user.role = ROLE_ADMIN
    try:
        apply_new_password(user, password)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise click.ClickException(f"User {username} or email {email} already exists")
    click.echo(f"Administrator {username} created (id={user.id})")


@click.group("two-factor")
def two_factor_cli():
    """Two-factor authentication maintenance."""
    pass


@two_factor_cli.command("reset")
@click.argument("username")
@with_appcontext
def reset_two_factor(username: str):
    """Remove the two-factor credential of USERNAME."""
    from .models import User

    user = User.query.filter_by(username=username).first()
    if user is None:
        raise click.ClickException(f"User {username} not found")
    if user.two_factor is None:
        click.echo(f"{username} has no two-factor credential")
        return
    db.session.delete(user.two_factor)
    db.session.commit()
    current_app.logger.info("[2FA CLI] reset for user %s", user.id)
    click.echo(f"Two-factor authentication reset for {username}")


@two_factor_cli.command("rotate-keys")
@with_appcontext
def rotate_keys():
    """Re-encrypt every stored secret with the first TWO_FACTOR_ENCRYPTION_KEY."""
    from .models import TwoFactorCredential
    from .utils.crypto import rotate_value
    from cryptography.fernet import InvalidToken

    rotated = failed = 0
    for credential in TwoFactorCredential.query.all():
        try:
            credential.secret_encrypted = rotate_value(credential.secret_encrypted)
            rotated += 1
        except InvalidToken:
            failed += 1
            current_app.logger.error("[2FA CLI] secret of user %s cannot be decrypted with any key", credential.user_id)
    db.session.commit()
    click.echo(f"Rotated {rotated} secrets, {failed} unreadable")
