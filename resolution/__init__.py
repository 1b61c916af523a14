"""
Entity resolution for synced communications.

- records: the normalized CalendarEventRecord / EmailMessageRecord union
- identity_index: per-run email -> founder lookup for one user
- resolver: tiered attribution of records to founders and companies
"""
