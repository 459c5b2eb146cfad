"""
SQLite-backed listing store used for comparable-price lookups.

Listing persistence belongs to the web application; this module only
provides the read query the price comparator needs, plus the minimal
schema and insert helper used to seed local databases and tests.

No ORM — just raw sqlite3.
"""

import logging
import os
import sqlite3
from typing import List, Optional, Protocol

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("LISTINGS_DB_PATH", "listings.db")

MAX_COMPARABLES = 500


def _casefold(value):
    return value.casefold() if isinstance(value, str) else value


class ListingStore(Protocol):
    """Storage collaborator contract for price context."""

    def comparable_prices(
        self,
        city: str,
        listing_type: str,
        category: str,
        limit: int = MAX_COMPARABLES,
    ) -> List[int]:
        ...


class SQLiteListingStore:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or DB_PATH

    def _connect(self, read_only: bool = False):
        if read_only:
            conn = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True, timeout=10)
        else:
            conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        # NOCASE only folds ASCII, so "Örebro" and "örebro" need this.
        conn.create_function("casefold", 1, _casefold, deterministic=True)
        return conn

    def init_db(self):
        """Create the listings table if missing.  Safe to call repeatedly."""
        conn = self._connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS listings (
                    id          TEXT PRIMARY KEY,
                    city        TEXT NOT NULL,
                    type        TEXT NOT NULL,
                    category    TEXT NOT NULL,
                    price       INTEGER NOT NULL,
                    size        INTEGER,
                    created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                CREATE INDEX IF NOT EXISTS idx_listings_type_category
                    ON listings(type, category);
            """)
            conn.commit()
        finally:
            conn.close()

    def add_listing(self, listing_id: str, city: str, listing_type: str,
                    category: str, price: int, size: Optional[int] = None):
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO listings (id, city, type, category, price, size) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (listing_id, city, listing_type, category, price, size),
            )
            conn.commit()
        finally:
            conn.close()

    def comparable_prices(
        self,
        city: str,
        listing_type: str,
        category: str,
        limit: int = MAX_COMPARABLES,
    ) -> List[int]:
        """Prices of listings matching city (any case), type and category.

        *category* is matched as a substring so multi-category listings
        ("butik,showroom") still count.  A database file that does not
        exist yet has no comparables; it is never created here.
        """
        if not os.path.exists(self.db_path):
            return []
        conn = self._connect(read_only=True)
        try:
            rows = conn.execute(
                "SELECT price FROM listings "
                "WHERE casefold(city) = ? AND type = ? AND category LIKE ? "
                "LIMIT ?",
                (_casefold(city), listing_type, f"%{category}%", int(limit)),
            ).fetchall()
        finally:
            conn.close()
        return [row["price"] for row in rows]
