import secrets
import string
import sys
from typing import List, Optional, Tuple

from .config import load_config
from .crypto import generate_key_pair, license_key_lookup
from .db import db
from .expiration import calculate_license_expiration_date, calculate_updated_license_expiration_date
from .models import (
    ExpirationStart, ExpirationType, KeyPair, License, Team, TeamLimits, TeamSettings,
)
from .server import create_app

KEY_ALPHABET = string.ascii_uppercase + string.digits


def generate_license_key() -> str:
    groups = ["".join(secrets.choice(KEY_ALPHABET) for _ in range(5)) for _ in range(5)]
    return "-".join(groups)


def create_team(name: str, allow_classloader: bool = False, team_id: Optional[str] = None, **settings) -> Team:
    public_pem, private_pem = generate_key_pair()
    team = Team(name=name) if team_id is None else Team(id=team_id, name=name)
    db.session.add(team)
    db.session.flush()

    db.session.add(KeyPair(team_id=team.id, public_key=public_pem, private_key=private_pem))
    db.session.add(TeamSettings(team_id=team.id, **settings))
    db.session.add(TeamLimits(team_id=team.id, allow_classloader=allow_classloader))
    db.session.commit()
    return team


def add_license(
    team: Team,
    license_key: str,
    secret: str,
    expiration_type: ExpirationType = ExpirationType.NEVER,
    expiration_start: ExpirationStart = ExpirationStart.CREATION,
    expiration_days: Optional[int] = None,
    expiration_date=None,
    **fields,
) -> License:
    lic = License(
        team_id=team.id,
        license_key_lookup=license_key_lookup(license_key, team.id, secret),
        expiration_type=expiration_type,
        expiration_start=expiration_start,
        expiration_days=expiration_days,
        expiration_date=calculate_license_expiration_date(
            expiration_type, expiration_start, expiration_days, expiration_date
        ),
        **fields,
    )
    db.session.add(lic)
    db.session.commit()
    return lic


def update_license_expiration(
    lic: License,
    expiration_type: ExpirationType,
    expiration_start: ExpirationStart = ExpirationStart.CREATION,
    expiration_days: Optional[int] = None,
    expiration_date=None,
) -> License:
    lic.expiration_date = calculate_updated_license_expiration_date(
        expiration_type,
        expiration_start,
        previous_type=lic.expiration_type,
        previous_date=lic.expiration_date,
        expiration_days=expiration_days,
        expiration_date=expiration_date,
    )
    lic.expiration_type = expiration_type
    lic.expiration_start = expiration_start
    lic.expiration_days = expiration_days
    db.session.commit()
    return lic


def seed_keys(team: Team, keys: List[str], secret: str, days: Optional[int] = None) -> List[Tuple[str, str]]:
    """
    Adds each key to the team. With `days`, keys become DURATION licenses and
    existing keys are moved onto the new duration instead of being skipped.
    """
    results = []
    for key in keys:
        key = key.strip()
        lookup = license_key_lookup(key, team.id, secret)
        existing = License.query.filter_by(team_id=team.id, license_key_lookup=lookup).first()

        if existing is None:
            if days:
                add_license(team, key, secret, expiration_type=ExpirationType.DURATION, expiration_days=days)
            else:
                add_license(team, key, secret)
            results.append(("OK", f"added: {key}"))
        elif days:
            update_license_expiration(existing, ExpirationType.DURATION, expiration_days=days)
            results.append(("OK", f"updated: {key} expires {existing.expiration_date:%Y-%m-%d}"))
        else:
            results.append(("SKIP", f"exists: {key}"))
    return results


def main():
    args = [a for a in sys.argv[1:] if not a.startswith("--days=")]
    days_args = [a for a in sys.argv[1:] if a.startswith("--days=")]
    if not args:
        print("Usage: python -m keygate_license_server.seed_licenses TEAM_ID|new [--days=N] [KEY1 KEY2 ...]")
        sys.exit(1)

    try:
        days = int(days_args[-1].split("=", 1)[1]) if days_args else None
    except ValueError:
        print(f"[ERR] bad value: {days_args[-1]}")
        sys.exit(1)

    config = load_config()
    app = create_app(config)
    with app.app_context():
        db.create_all()

        team_arg = args[0]
        if team_arg == "new":
            team = create_team("Default team")
            print(f"[OK] team created: {team.id}")
            print(team.key_pair.public_key)
        else:
            team = Team.query.filter_by(id=team_arg, deleted_at=None).first()
            if team is None:
                print(f"[ERR] team not found: {team_arg}")
                sys.exit(1)

        keys = args[1:] or [generate_license_key()]
        for tag, message in seed_keys(team, keys, config.hmac_secret, days):
            print(f"[{tag}] {message}")


if __name__ == "__main__":
    main()
