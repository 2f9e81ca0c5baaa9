#!/usr/bin/env python3
"""Runs alembic against SQLALCHEMY_DATABASE_URI, e.g. `scripts/run_alembic.py upgrade head`."""
import sys

from alembic.config import main

if __name__ == '__main__':
    sys.exit(main())
