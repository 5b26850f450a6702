"""
repositories/ - Ledger Store
============================
One repository per collection: transactions, budgets (with their category
lines), chat sessions (with outbound queue and error log) and users (with
their registered chat handles). Repositories speak SQL and return domain models.
"""
