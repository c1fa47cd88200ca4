# SQL used by the SQLite ledger backend. One row per account.

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY,
    balance INTEGER NOT NULL
)
"""

JOURNAL_MODE = "PRAGMA journal_mode=WAL"

CLEAR_ACCOUNTS = "DELETE FROM accounts"
INSERT_ACCOUNT = "INSERT INTO accounts (id, balance) VALUES (?, ?)"
APPLY_DELTA = "UPDATE accounts SET balance = balance + ? WHERE id = ?"

COUNT_ACCOUNTS = "SELECT COUNT(*) FROM accounts"
SUM_BALANCES = "SELECT COALESCE(SUM(balance), 0) FROM accounts"

BEGIN_MODES = ("DEFERRED", "IMMEDIATE", "EXCLUSIVE")
