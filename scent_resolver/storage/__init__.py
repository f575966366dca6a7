"""
SQLite persistence for the usage ledger and feedback log.
"""
