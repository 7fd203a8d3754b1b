#!/usr/bin/env python
"""
Create the ledger tables (if missing) and issue an operator API key.

Usage:
    python seed.py [name]
"""
import sys

from hookledger.core.config import get_settings
from hookledger.db import crud
from hookledger.db.models import Base
from hookledger.db.session import create_db_engine, make_session_factory


def main() -> None:
    name = sys.argv[1] if len(sys.argv) > 1 else "operator"
    engine = create_db_engine(get_settings().database_url)
    Base.metadata.create_all(engine)

    db = make_session_factory(engine)()
    try:
        api_key = crud.issue_api_key(db, name)
    finally:
        db.close()
        engine.dispose()

    print("=== Operator Key Issued ===")
    print(f"Name    : {name}")
    print(f"API KEY : {api_key}  (store this securely!)")


if __name__ == "__main__":
    main()
