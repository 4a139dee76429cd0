"""Create the local database if needed and apply the messages schema."""

import asyncio
import sys
from pathlib import Path

import asyncpg

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from app.domain.messaging.store import ensure_schema
from app.settings import settings


def _split_database(url: str) -> tuple[str, str]:
	base, _, name = url.rpartition("/")
	return f"{base}/postgres", name.split("?", 1)[0]


async def main() -> None:
	system_url, database = _split_database(settings.postgres_url)
	print(f"Connecting to {system_url}...")
	sys_conn = await asyncpg.connect(system_url)
	try:
		exists = await sys_conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", database)
		if not exists:
			print(f"Creating database {database}...")
			await sys_conn.execute(f'CREATE DATABASE "{database}"')
		else:
			print(f"Database {database} already exists.")
	finally:
		await sys_conn.close()

	pool = await asyncpg.create_pool(dsn=settings.postgres_url, min_size=1, max_size=1)
	try:
		await ensure_schema(pool)
		print("messages schema ready.")
	finally:
		await pool.close()


if __name__ == "__main__":
	asyncio.run(main())
