from __future__ import annotations

import argparse
import os
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import pandas as pd
import psycopg2
from dotenv import load_dotenv

from tissue_migrate.config.loader import ConfigurationError, load_config
from tissue_migrate.db.persistence import PersistenceError
from tissue_migrate.db.pg_persistence import PgPersistence
from tissue_migrate.logging.init import log_summary, setup_logging
from tissue_migrate.models.config_models import MigrationOptions
from tissue_migrate.models.schema import load_schema
from tissue_migrate.services.delta import Delta
from tissue_migrate.services.extractor import Extractor
from tissue_migrate.services.field_mapper import load_mapping_files
from tissue_migrate.services.migrator import Migrator
from tissue_migrate.services.summary import render_summary_line
from tissue_migrate.source.reader import RowSourceError
from tissue_migrate.vocab.cache import VocabularyCache, set_vocabulary_cache
from tissue_migrate.vocab.store import PgVocabularyStore

"""CLI entrypoint.

    tissue-migrate [--debug] migrate -c migration.yml [--input rows.csv] [--dry-run] ...
    tissue-migrate [--debug] extract -c migration.yml --output out.csv (--ids 1,2 | --since 2024-01-01)

Exit codes: 0 every row validated/written, 2 some rows rejected, 1 fatal
(configuration error, missing input, database or persistence failure).
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1


def _dsn(options: MigrationOptions) -> str:
    """Connection string; .env / process environment first, then the config database section."""
    db_cfg = options.database
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or (db_cfg.dsn if db_cfg else None)
    if dsn:
        return dsn
    host = os.getenv("PGHOST", (db_cfg.host if db_cfg else None) or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg and db_cfg.port else "5432")
    user = os.getenv("PGUSER", (db_cfg.user if db_cfg else None) or "postgres")
    password = os.getenv("PGPASSWORD", (db_cfg.password if db_cfg else None) or "")
    database = os.getenv("PGDATABASE", (db_cfg.database if db_cfg else None) or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


@contextmanager
def _db_connection(options: MigrationOptions) -> Iterator[Any]:  # pragma: no cover (thin wrapper)
    conn = psycopg2.connect(_dsn(options))
    conn.autocommit = False  # 行単位の明示トランザクション (Migrator)
    try:
        yield conn
    finally:
        conn.close()


def _load_env_file(path: Path, override: bool = True) -> None:
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="tissue-migrate", description="Tabular -> domain object graph migration")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    m = sub.add_parser("migrate", help="Migrate input rows into target object graphs")
    m.add_argument("-c", "--config", type=Path, help="Run configuration YAML")
    m.add_argument("--input", help="Input CSV file")
    m.add_argument("--target", help="Target domain class")
    m.add_argument("--bad", help="Bad-record CSV file")
    m.add_argument("--offset", type=int, help="Skip N leading input records")
    m.add_argument("--unique", action="store_true", default=None, help="Uniquify natural keys")
    m.add_argument("--create-only", action="store_true", default=None, help="Never update existing objects")
    m.add_argument("--dry-run", action="store_true", help="Build and validate graphs without writing")

    x = sub.add_parser("extract", help="Extract persisted target objects to CSV")
    x.add_argument("-c", "--config", type=Path, help="Run configuration YAML")
    x.add_argument("--target", help="Target domain class")
    x.add_argument("--output", required=True, type=Path, help="Output CSV file")
    x.add_argument("--ids", help="Comma separated identifiers to extract")
    x.add_argument("--since", type=pd.Timestamp, help="Extract objects changed at or after this time")
    x.add_argument("--before", type=pd.Timestamp, help="... and before this time (default now)")
    return p.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    keys = ("input", "target", "bad", "offset", "unique", "create_only")
    return {k: getattr(args, k, None) for k in keys}


def _install_stop_handler() -> tuple[threading.Event, Any]:
    stop = threading.Event()

    def _handler(signum: int, frame: Any) -> None:
        # 2 回目の Ctrl-C は即時中断
        if stop.is_set():
            raise KeyboardInterrupt
        stop.set()

    previous = signal.signal(signal.SIGINT, _handler)
    return stop, previous


def _timestamp(value: pd.Timestamp | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.tz_localize("UTC")
    return value.to_pydatetime()


def _migrate(args: argparse.Namespace, options: MigrationOptions, logger: Any) -> int:
    disable_db = os.getenv("DISABLE_DB_CONNECT") == "1"
    if disable_db and not args.dry_run:
        logger.error("commit mode needs a database; DISABLE_DB_CONNECT=1 allows --dry-run only")
        return EXIT_FATAL

    def _run(conn: Any) -> int:
        vocabulary = None
        persistence = None
        if conn is not None:
            vocabulary = set_vocabulary_cache(
                VocabularyCache(PgVocabularyStore(conn), options.category_aliases)
            )
            persistence = PgPersistence(conn, load_schema(Path(options.schema)))
            if not args.dry_run:
                persistence.ensure_tables()
        migrator = Migrator.from_options(options, vocabulary=vocabulary, persistence=persistence)
        stop, previous = _install_stop_handler()
        try:
            result = migrator.run(commit=not args.dry_run, stop=stop)
        finally:
            signal.signal(signal.SIGINT, previous)
        mode = "dry-run" if args.dry_run else "commit"
        logger.info(f"mode={mode} target={options.target} input={options.input}")
        if result.bad_file:
            logger.info(f"rejected rows written to {result.bad_file}")
        log_summary(render_summary_line(result)[len("SUMMARY "):])
        return EXIT_PARTIAL_FAILURE if result.rejected_rows else EXIT_SUCCESS_ALL

    if disable_db:
        logger.debug("DB connect disabled via DISABLE_DB_CONNECT=1")
        return _run(None)
    with _db_connection(options) as conn:
        return _run(conn)


def _extract(args: argparse.Namespace, options: MigrationOptions, logger: Any) -> int:
    if args.ids is None and args.since is None:
        logger.error("extract needs --ids or --since")
        return EXIT_FATAL
    schema = load_schema(Path(options.schema))
    mapper = load_mapping_files(options.mapping, schema, options.target)
    with _db_connection(options) as conn:
        persistence = PgPersistence(conn, schema)
        if args.ids is not None:
            identifiers: Any = [int(i) for i in args.ids.split(",") if i.strip()]
        else:
            identifiers = Delta(
                persistence,
                options.target,
                _timestamp(args.since),  # type: ignore[arg-type]
                _timestamp(args.before),
                options.delta_patterns,
            )
        count = Extractor(persistence, schema, mapper).run(identifiers, args.output)
    log_summary(f"extracted={count} target={options.target} output={args.output}")
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    logger = setup_logging(debug=args.debug)
    if args.debug:
        logger.debug("debug mode enabled")
    _load_env_file(Path(".env"), override=True)

    try:
        options = load_config(args.config, _overrides(args))
        if args.command == "migrate":
            return _migrate(args, options, logger)
        return _extract(args, options, logger)
    except ConfigurationError as e:
        logger.error(f"config: {e}")
    except RowSourceError as e:
        logger.error(f"input: {e}")
    except PersistenceError as e:
        logger.error(f"persistence: {e}")
    except psycopg2.Error as e:
        logger.error(f"database: {e}")
    return EXIT_FATAL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
