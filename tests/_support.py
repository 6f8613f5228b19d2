import sqlite3

from gridcrud.config import Settings
from gridcrud.db import connect

SECRET = "test-secret-key"


def make_settings(**overrides) -> Settings:
    options = {"secret_key": SECRET}
    options.update(overrides)
    return Settings(**options)


def make_conn() -> sqlite3.Connection:
    """Two users; twelve posts, odd ids by alice, even ids by bob, every third one published."""
    conn = connect(":memory:")
    conn.executescript(
        """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL UNIQUE,
            email TEXT,
            role TEXT DEFAULT 'user'
        );
        CREATE TABLE posts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            title TEXT NOT NULL,
            content TEXT,
            status TEXT DEFAULT 'draft',
            views INTEGER DEFAULT 0
        );
        """
    )
    conn.execute("INSERT INTO users (id, username, email, role) VALUES (1, 'alice', 'alice@example.com', 'admin')")
    conn.execute("INSERT INTO users (id, username, email, role) VALUES (2, 'bob', 'bob@example.com', 'user')")
    for i in range(1, 13):
        conn.execute(
            "INSERT INTO posts (id, user_id, title, content, status, views) VALUES (?, ?, ?, ?, ?, ?)",
            (
                i,
                1 if i % 2 else 2,
                "Python tips" if i == 7 else f"Post {i}",
                "about python" if i in (2, 5) else "misc",
                "published" if i % 3 == 0 else "draft",
                i * 10,
            ),
        )
    conn.commit()
    return conn


def post_ids(rows) -> list:
    return [row["id"] for row in rows]
