"""
Compliance journals (temperature / health checks).

Only the write surface lives here: entries are stored as free-form values per
(journal, date, subject). Every write is audit-sensitive.
"""
