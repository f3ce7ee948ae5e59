"""
Maintenance commands registered on app.cli:

    flask --app school_api sweep-tokens
    flask --app school_api create-admin --email admin@example.org --password '...'
"""
import click
from flask import Flask, current_app
from flask.cli import with_appcontext

from models import storage
from models.user import Role, User
from utils.audit import get_audit_logger
from utils.password_policy import validate_password
from utils.refresh_tokens import get_refresh_store
from utils.security import hash_password


@click.command("sweep-tokens")
@with_appcontext
def sweep_tokens_command():
    """Mark expired refresh tokens as revoked."""
    count = get_refresh_store().sweep_expired()
    click.echo(f"Revoked {count} expired refresh token(s)")


@click.command("create-admin")
@with_appcontext
@click.option("--email", required=True, help="Login email of the new platform admin.")
@click.option("--password", required=True, help="Initial password; must pass the password policy.")
@click.option("--first-name", default="Platform", show_default=True)
@click.option("--last-name", default="Admin", show_default=True)
def create_admin_command(email, password, first_name, last_name):
    """Bootstrap a platform admin account."""
    email = email.strip().lower()
    result = validate_password(password, min_score=current_app.config["PASSWORD_MIN_SCORE"])
    if not result.is_valid:
        for message in result.errors:
            click.echo(f"  - {message}", err=True)
        raise click.ClickException("Password validation failed")

    session = storage.get_session()
    if session.query(User).filter(User.email == email).first():
        raise click.ClickException(f"User already exists with email {email}")

    user = User(
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        role=Role.PLATFORM_ADMIN,
        school_id=None,
    )
    storage.new(user)
    storage.save()

    audit = get_audit_logger()
    audit.log_data_event(
        "create", "users", resource_id=user.id,
        new_data={"email": user.email, "role": user.role.value, "source": "cli"},
    )
    audit.flush()
    click.echo(f"Created platform admin {user.email} ({user.id})")


def register_commands(app: Flask) -> None:
    app.cli.add_command(sweep_tokens_command)
    app.cli.add_command(create_admin_command)
