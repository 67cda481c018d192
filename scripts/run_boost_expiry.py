#!/usr/bin/env python3
"""
One-off script to run a boost expiry pass outside the scheduler.
Usage: python scripts/run_boost_expiry.py [--init-db]
Example: python scripts/run_boost_expiry.py
"""
import logging
import sys

# Setup path
sys.path.insert(0, ".")

from kivendi.db.base import Base
from kivendi.db.session import engine
from kivendi.services.boost_expiry import run_boost_expiry


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    if "--init-db" in sys.argv[1:]:
        Base.metadata.create_all(bind=engine)
    result = run_boost_expiry()
    print(f"Deactivated {result.boosts_deactivated} boost(s), unflagged {result.ads_unflagged} ad(s)")


if __name__ == "__main__":
    main()
