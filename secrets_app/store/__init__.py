"""User store: Postgres-backed persistence for user records.

Postgres drivers are imported by the concrete store only, so the auth helpers can be
imported (and unit tested) without a database.
"""

from __future__ import annotations
