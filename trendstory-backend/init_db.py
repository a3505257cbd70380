#!/usr/bin/env python3
"""
Database initialization script for Docker.
Creates the jobs, scenes, assets and job_logs tables if they don't exist.
"""

import sys
from sqlalchemy.exc import SQLAlchemyError
from database import engine, service_credentials_valid, Base
import models  # noqa: F401  (registers the tables on Base.metadata)

def init_database():
    """Initialize the database by creating all tables."""
    if not service_credentials_valid():
        print("⚠️ SERVICE_DATABASE_URL is missing or malformed; background continuations will not run.")
    try:
        print("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        print("✅ Database tables created successfully!")
    except SQLAlchemyError as e:
        print(f"❌ Error creating database tables: {e}")
        sys.exit(1)

if __name__ == "__main__":
    init_database()
