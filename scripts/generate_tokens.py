"""Mint verification tokens for a guild from a CSV of students.

Usage:
    python scripts/generate_tokens.py GUILD_ID students.csv [out.csv]

The input CSV needs the columns ``tu_id``, ``moodle_id`` and ``roles``
(comma-separated internal roles, e.g. ``verified`` or ``verified,tutor``).
The output repeats every row with an added ``token`` column; without an
output path it is written to stdout.

Tokens are encrypted with TOKEN_SECRET from the environment or .env, which
must match the secret the bot runs with. The script refuses to run without it.
"""

from __future__ import annotations

import csv
import sys
from typing import TextIO

from pydantic import ValidationError

from tutorqueue.config import Settings
from tutorqueue.core.tokens import issue_token, parse_roles


def generate(guild_id: str, secret: str, source: TextIO, dest: TextIO) -> int:
    reader = csv.DictReader(source)
    fieldnames = list(reader.fieldnames or []) + ["token"]
    writer = csv.DictWriter(dest, fieldnames=fieldnames)
    writer.writeheader()

    count = 0
    for line, row in enumerate(reader, start=2):
        roles = parse_roles(row.get("roles") or "")
        if not roles:
            print(f"line {line}: no valid roles, skipped", file=sys.stderr)
            continue
        row["token"] = issue_token(
            secret,
            server_id=guild_id,
            tu_id=(row.get("tu_id") or "").strip(),
            moodle_id=(row.get("moodle_id") or "").strip(),
            roles=roles,
        )
        writer.writerow(row)
        count += 1
    return count


def main() -> None:
    if len(sys.argv) < 3:
        print(__doc__)
        sys.exit(1)

    guild_id, source_path = sys.argv[1], sys.argv[2]
    try:
        # Validate like production so a missing secret is an error, not a random key.
        settings = Settings(tutorqueue_env="production")
    except ValidationError as exc:
        print(f"error: could not load settings\n{exc}", file=sys.stderr)
        sys.exit(1)

    with open(source_path, newline="") as source:
        if len(sys.argv) > 3:
            with open(sys.argv[3], "w", newline="") as dest:
                count = generate(guild_id, settings.token_secret, source, dest)
        else:
            count = generate(guild_id, settings.token_secret, source, sys.stdout)
    print(f"{count} token(s) generated", file=sys.stderr)


if __name__ == "__main__":
    main()
