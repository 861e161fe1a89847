"""Durable multi-queue job scheduling for the creation pipeline.

Jobs live in the same SQLite database as the resource ledger and the
pipeline records, so a handler's side effects and the job's terminal status
are visible to every worker process without a separate broker. Each queue
gets its own pool of executor threads; a ``Supervisor`` value owns the pools
and their lifecycle.

Delivery is at-least-once: a claim is a compare-and-set on the job row, and
claims abandoned by a crashed worker are requeued by stale-claim recovery.
Handlers with side effects therefore write through natural-key upserts.
"""
