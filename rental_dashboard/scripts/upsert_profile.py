#!/usr/bin/env python3
from __future__ import annotations

import argparse
import hashlib
import os
import secrets
import uuid

from sqlalchemy import create_engine, text


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one dashboard profile directly from terminal.",
    )
    parser.add_argument("--email", required=True, help="Login email (case-insensitive)")
    parser.add_argument("--fullname", default=None, help="Display name; required when creating")
    parser.add_argument("--role", choices=["admin", "staff"], default="staff")
    parser.add_argument(
        "--password",
        default=None,
        help="Password to set. Omit to keep the existing password.",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    email = args.email.strip().lower()
    if not email:
        parser.error("--email must not be empty")
    if not args.db_url:
        parser.error("Missing DB URL. Set RENTAL_DB_URL or pass --db-url.")
    if args.password is not None and len(args.password.strip()) < 6:
        parser.error("--password must be at least 6 characters.")

    password_salt = None
    password_hash = None
    if args.password is not None:
        password_salt = secrets.token_hex(16)
        password_hash = _password_hash(args.password.strip(), password_salt)

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    with engine.begin() as conn:
        existing = conn.execute(
            text("SELECT id FROM profiles WHERE lower(email) = :email"),
            {"email": email},
        ).scalar()
        if existing is None:
            if not (args.fullname or "").strip():
                parser.error("--fullname is required when creating a profile.")
            if password_hash is None:
                parser.error("--password is required when creating a profile.")
            profile_id = str(uuid.uuid4())
            conn.execute(
                text(
                    """
                    INSERT INTO profiles (id, email, fullname, role, password_hash, password_salt, created_at)
                    VALUES (:id, :email, :fullname, :role, :password_hash, :password_salt, CURRENT_TIMESTAMP)
                    """
                ),
                {
                    "id": profile_id,
                    "email": email,
                    "fullname": args.fullname.strip(),
                    "role": args.role,
                    "password_hash": password_hash,
                    "password_salt": password_salt,
                },
            )
        else:
            profile_id = existing
            conn.execute(
                text(
                    """
                    UPDATE profiles SET
                        role = :role,
                        fullname = COALESCE(:fullname, fullname),
                        password_hash = COALESCE(:password_hash, password_hash),
                        password_salt = COALESCE(:password_salt, password_salt)
                    WHERE id = :id
                    """
                ),
                {
                    "id": profile_id,
                    "role": args.role,
                    "fullname": (args.fullname or "").strip() or None,
                    "password_hash": password_hash,
                    "password_salt": password_salt,
                },
            )
        row = conn.execute(
            text("SELECT id, email, fullname, role, password_hash FROM profiles WHERE id = :id"),
            {"id": profile_id},
        ).mappings().first()

    if not row:
        raise RuntimeError("Upsert finished but no row returned.")

    print(
        f"OK id={row['id']} email={row['email']} fullname={row['fullname']} "
        f"role={row['role']} has_password={bool(row.get('password_hash'))}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
