from __future__ import annotations

import argparse
import json
import logging

from clinic_recon.db.session import SessionLocal
from clinic_recon.services.reconcile.errors import IdentityConflict, StaleWrite
from clinic_recon.services.reconcile.identity import IdentityResolver

EXIT_CONFLICT = 3


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Resolve a LINE chat id and/or permanent patient id to one identity."
    )
    parser.add_argument("--chat-id", help="LINE user id (chat id).")
    parser.add_argument("--patient-id", help="Permanent patient id.")
    parser.add_argument(
        "--link",
        action="store_true",
        help="Apply the resolution: merge temporary rows and attach the chat id.",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING).")
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper())

    if not args.chat_id and not args.patient_id:
        print("Provide --chat-id and/or --patient-id.")
        return 2

    session = SessionLocal()
    try:
        resolver = IdentityResolver(session)
        try:
            canonical = resolver.resolve(chat_id=args.chat_id, permanent_id=args.patient_id)
        except IdentityConflict as exc:
            print(json.dumps({"conflict": str(exc), "identities": exc.identities}, indent=2, sort_keys=True))
            return EXIT_CONFLICT
        payload: dict[str, object] = {"resolved": canonical.as_dict(), "linked": False}
        if args.link:
            try:
                rows = resolver.link(canonical)
                session.commit()
            except (IdentityConflict, StaleWrite) as exc:
                session.rollback()
                print(json.dumps({"conflict": str(exc)}, indent=2, sort_keys=True))
                return EXIT_CONFLICT
            payload["linked"] = True
            payload["rows_touched"] = rows
        print(json.dumps(payload, indent=2, sort_keys=True))
    finally:
        session.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
