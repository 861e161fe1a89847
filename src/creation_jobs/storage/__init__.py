"""SQLite storage primitives shared by the job, ledger and artifact repositories."""
