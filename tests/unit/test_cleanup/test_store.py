# tests/unit/test_cleanup/test_store.py
"""Unit tests for StoreClient against SQLite."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError, ProgrammingError


class TestPredicates:
    """Tests for predicate factories."""

    def test_created_in_window(self, store_pair, seed, now):
        """Only rows with start < created <= end should match."""
        from pgcleanup.services.cleanup.store import created_in
        from pgcleanup.services.cleanup.windows import compute_windows

        main, _ = store_pair
        windows = compute_windows(now, 7, 14, 14)
        # Exactly on both edges, inside, and outside
        seed(main, "edge", [7, 14, 10, 3, 20])

        assert main.count("metadata", created_in(windows.backup)) == 2  # 7 and 10 days
        assert main.count("metadata", created_in(windows.recent)) == 1

    def test_created_at_or_before(self, store_pair, seed, now):
        from pgcleanup.services.cleanup.store import created_at_or_before

        main, _ = store_pair
        seed(main, "old", [14, 15, 13])

        assert main.count("metadata", created_at_or_before(now - timedelta(days=14))) == 2

    def test_hash_in(self, store_pair, seed):
        from pgcleanup.services.cleanup.store import hash_in

        main, _ = store_pair
        keys = seed(main, "h", [1, 2, 3])

        assert main.count("signals", hash_in(keys[:2])) == 2
        assert main.count("signals", hash_in([])) == 0


class TestStoreReads:
    """Tests for count() and select_keys()."""

    def test_counts_per_table(self, store_pair, seed):
        from pgcleanup.services.cleanup.store import all_rows

        main, _ = store_pair
        seed(main, "r", [1, 2])

        assert main.counts(all_rows()) == {"metadata": 2, "signals": 2, "fills": 2}

    def test_select_keys_ordered_by_hash(self, store_pair, seed):
        from pgcleanup.services.cleanup.store import all_rows

        main, _ = store_pair
        keys = seed(main, "k", [5, 1, 3, 2])

        assert main.select_keys("metadata", all_rows()) == sorted(keys)

    def test_unknown_table_raises_query_error(self, store_pair):
        from pgcleanup.services.cleanup.errors import QueryError
        from pgcleanup.services.cleanup.store import all_rows

        main, _ = store_pair

        with pytest.raises(QueryError, match="unknown table"):
            main.count("positions", all_rows())

    def test_operational_error_maps_to_connection_error(self):
        """Connection-level failures should surface as StoreConnectionError."""
        from pgcleanup.services.cleanup.errors import StoreConnectionError
        from pgcleanup.services.cleanup.store import StoreClient, all_rows

        engine = MagicMock()
        engine.connect.side_effect = OperationalError("SELECT", {}, Exception("server closed the connection"))
        store = StoreClient(engine, "main")

        with pytest.raises(StoreConnectionError, match="count main.metadata"):
            store.count("metadata", all_rows())

    def test_other_errors_map_to_query_error(self):
        from pgcleanup.services.cleanup.errors import QueryError, StoreConnectionError
        from pgcleanup.services.cleanup.store import StoreClient, all_rows

        engine = MagicMock()
        engine.connect.side_effect = ProgrammingError("SELECT", {}, Exception("relation does not exist"))
        store = StoreClient(engine, "archive")

        with pytest.raises(QueryError) as exc_info:
            store.select_keys("metadata", all_rows())
        assert not isinstance(exc_info.value, StoreConnectionError)


class TestCopyRows:
    """Tests for copy_rows()."""

    def test_copies_in_batches(self, store_pair, seed):
        """More keys than batch_size should still copy every row."""
        from pgcleanup.services.cleanup.store import all_rows

        main, archive = store_pair
        keys = seed(main, "b", [8 + i * 0.1 for i in range(20)])

        for table in ("metadata", "signals", "fills"):
            assert main.copy_rows(table, keys, archive) == 20

        assert archive.counts(all_rows()) == {"metadata": 20, "signals": 20, "fills": 20}
        assert main.counts(all_rows()) == {"metadata": 20, "signals": 20, "fills": 20}

    def test_copy_preserves_values(self, store_pair, seed):
        from sqlalchemy import select

        from pgcleanup.models import TABLES

        main, archive = store_pair
        keys = seed(main, "v", [9])

        main.copy_rows("metadata", keys, archive)
        main.copy_rows("fills", keys, archive)

        with archive.engine.connect() as conn:
            row = conn.execute(select(TABLES["metadata"])).one()
            fill = conn.execute(select(TABLES["fills"])).one()
        assert row.hash == keys[0]
        assert row.data == {"type": "v"}
        assert fill.hash == keys[0]

    def test_empty_keys_is_noop(self, store_pair):
        main, archive = store_pair

        assert main.copy_rows("metadata", [], archive) == 0

    def test_duplicate_row_fails_whole_table(self, store_pair, seed):
        """A primary key collision should roll back the archive transaction."""
        from pgcleanup.services.cleanup.errors import CopyError
        from pgcleanup.services.cleanup.store import all_rows

        main, archive = store_pair
        keys = seed(main, "d", [8, 9, 10])
        main.copy_rows("metadata", keys[:1], archive)

        with pytest.raises(CopyError, match="metadata"):
            main.copy_rows("metadata", keys, archive)

        assert archive.count("metadata", all_rows()) == 1

    def test_child_without_parent_fails(self, store_pair, seed):
        """Archive foreign keys should reject children copied before their parent."""
        from pgcleanup.services.cleanup.errors import CopyError

        main, archive = store_pair
        keys = seed(main, "c", [8])

        with pytest.raises(CopyError):
            main.copy_rows("signals", keys, archive)


class TestDeleteRows:
    """Tests for delete_rows()."""

    def test_delete_cascades_to_children(self, store_pair, seed):
        from pgcleanup.services.cleanup.store import all_rows, hash_in

        main, _ = store_pair
        keys = seed(main, "x", [1, 2, 3])

        deleted = main.delete_rows("metadata", hash_in(keys[:2]))

        assert deleted == 2
        assert main.counts(all_rows()) == {"metadata": 1, "signals": 1, "fills": 1}

    def test_delete_error_is_wrapped(self):
        from pgcleanup.services.cleanup.errors import DeleteError
        from pgcleanup.services.cleanup.store import StoreClient, all_rows

        engine = MagicMock()
        engine.begin.side_effect = OperationalError("DELETE", {}, Exception("canceling statement due to statement timeout"))
        store = StoreClient(engine, "main")

        with pytest.raises(DeleteError, match="statement timeout"):
            store.delete_rows("metadata", all_rows())


class TestKeyHelpers:
    """Tests for count_keys() and delete_keys()."""

    def test_count_keys_in_batches(self, store_pair, seed):
        from sqlalchemy import event

        main, _ = store_pair
        keys = seed(main, "k", [1 + i * 0.1 for i in range(20)])
        statements = []

        def record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(main.engine, "before_cursor_execute", record)
        try:
            assert main.count_keys("signals", keys + ["missing_hash"]) == 20
        finally:
            event.remove(main.engine, "before_cursor_execute", record)

        # batch_size=7: 21 keys need 3 queries
        assert len([s for s in statements if "count" in s.lower()]) == 3

    def test_delete_keys_in_batches(self, store_pair, seed):
        from sqlalchemy import event

        from pgcleanup.services.cleanup.store import all_rows

        main, _ = store_pair
        keys = seed(main, "k", [1 + i * 0.1 for i in range(20)])
        statements = []

        def record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(main.engine, "before_cursor_execute", record)
        try:
            deleted = main.delete_keys("metadata", keys[:15])
        finally:
            event.remove(main.engine, "before_cursor_execute", record)

        assert deleted == 15
        assert len([s for s in statements if s.lstrip().upper().startswith("DELETE")]) == 3
        assert main.counts(all_rows()) == {"metadata": 5, "signals": 5, "fills": 5}

    def test_delete_keys_empty(self, store_pair):
        main, _ = store_pair

        assert main.delete_keys("metadata", []) == 0

    def test_delete_keys_error_is_wrapped(self):
        from pgcleanup.services.cleanup.errors import DeleteError
        from pgcleanup.services.cleanup.store import StoreClient

        engine = MagicMock()
        engine.begin.side_effect = OperationalError("DELETE", {}, Exception("archive gone"))

        with pytest.raises(DeleteError, match="archive gone"):
            StoreClient(engine, "archive").delete_keys("fills", ["h1"])


class TestVerifySchema:
    """Tests for ping() and verify_schema()."""

    def test_passes_with_tables(self, store_pair):
        _, archive = store_pair

        archive.ping()
        archive.verify_schema()

    def test_missing_tables(self, tmp_path):
        from pgcleanup.database import create_store_engine
        from pgcleanup.services.cleanup.errors import TargetUnreachableError
        from pgcleanup.services.cleanup.store import StoreClient

        store = StoreClient(create_store_engine(f"sqlite:///{tmp_path / 'empty.db'}"), "archive")

        with pytest.raises(TargetUnreachableError, match="missing tables: metadata, signals, fills"):
            store.verify_schema()

    def test_unreachable(self):
        from pgcleanup.services.cleanup.errors import TargetUnreachableError
        from pgcleanup.services.cleanup.store import StoreClient

        engine = MagicMock()
        engine.connect.side_effect = OperationalError("SELECT 1", {}, Exception("could not connect to server"))

        with pytest.raises(TargetUnreachableError, match="archive database unreachable"):
            StoreClient(engine, "archive").ping()
