"""
Batch transfer: paging, chunking, skip-existing counts, failures and cancellation.
"""

import threading

import pytest

from conftest import FakeStore, ToggleEvent, make_table

from relmigrate.stores import StoreConnectionError, StoreError

from relmigrate.transfer import (
    CANCELLED, EMPTY, FAILED, MIGRATED, PAGINATED, PRE_ORDERED,
    MigrationCancelled, transfer_paginated, transfer_rows,
)

ITEM = make_table("Item", ("id", "name"))


def items(n, start=1):
    return [{"id": i, "name": f"item-{i}"} for i in range(start, start + n)]


def stores(source_rows, dest_rows=None):
    source = FakeStore.for_tables([ITEM], {"Item": source_rows})
    destination = FakeStore.for_tables([ITEM], {"Item": dest_rows or []})
    return source, destination


class TestTransferPaginated:

    def test_pages_until_short_page(self):
        source, destination = stores(items(1200))

        report = transfer_paginated(source, destination, ITEM, batch_size=500)

        assert [c[1:] for c in source.page_calls] == [(500, None), (500, 500), (500, 1000)]
        assert [len(keys) for _, keys in destination.insert_calls] == [500, 500, 200]
        assert report.status == MIGRATED
        assert report.mode == PAGINATED
        assert report.total_source == 1200
        assert report.inserted == 1200
        assert report.skipped_existing == 0

    def test_exact_multiple_needs_one_empty_page(self):
        source, destination = stores(items(1000))

        report = transfer_paginated(source, destination, ITEM, batch_size=500)

        assert len(source.page_calls) == 3
        assert len(destination.insert_calls) == 2
        assert report.inserted == 1000

    def test_empty_table_never_touches_destination(self):
        source, destination = stores([])

        report = transfer_paginated(source, destination, ITEM, batch_size=500)

        assert report.status == EMPTY
        assert source.page_calls == []
        assert destination.insert_calls == []

    def test_second_run_inserts_nothing(self):
        source, destination = stores(items(30))

        first = transfer_paginated(source, destination, ITEM, batch_size=7)
        second = transfer_paginated(source, destination, ITEM, batch_size=7)

        assert first.inserted == 30
        assert second.inserted == 0
        assert second.skipped_existing == 30
        assert second.status == MIGRATED
        assert len(destination.rows["Item"]) == 30

    def test_partial_destination_counts_existing(self):
        source, destination = stores(items(10), dest_rows=items(4))

        report = transfer_paginated(source, destination, ITEM, batch_size=3)

        assert report.inserted == 6
        assert report.skipped_existing == 4
        assert sorted(r["id"] for r in destination.rows["Item"]) == list(range(1, 11))

    def test_write_failure_names_batch_boundaries(self):
        source, destination = stores(items(12))
        destination.fail_inserts["Item"] = "value too long"

        report = transfer_paginated(source, destination, ITEM, batch_size=5)

        assert report.status == FAILED
        assert report.failed
        assert "rows 1..5" in report.message
        assert "1..5" in report.message
        assert "value too long" in report.message
        assert len(destination.insert_calls) == 1

    def test_progress_reported_per_chunk(self):
        source, destination = stores(items(25))
        calls = []

        transfer_paginated(source, destination, ITEM, batch_size=10,
                           on_progress=lambda *args: calls.append(args))

        assert calls == [("Item", 10, 25), ("Item", 20, 25), ("Item", 25, 25)]

    def test_cancel_before_first_chunk(self):
        source, destination = stores(items(20))
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(MigrationCancelled) as exc:
            transfer_paginated(source, destination, ITEM, batch_size=5, cancel=cancel)

        assert destination.insert_calls == []
        assert exc.value.report.status == CANCELLED

    def test_cancel_between_chunks_keeps_committed_rows(self):
        source, destination = stores(items(20))

        with pytest.raises(MigrationCancelled) as exc:
            transfer_paginated(source, destination, ITEM, batch_size=5, cancel=ToggleEvent(after=2))

        assert len(destination.rows["Item"]) == 10
        assert exc.value.report.inserted == 10
        assert "10/20" in exc.value.report.message

    @pytest.mark.parametrize("batch_size", [0, -3])
    def test_batch_size_must_be_positive(self, batch_size):
        source, destination = stores(items(3))
        with pytest.raises(ValueError):
            transfer_paginated(source, destination, ITEM, batch_size=batch_size)


class TestTransferRows:

    def test_chunks_in_given_order(self):
        destination = FakeStore.for_tables([ITEM])
        rows = [{"id": i, "name": "x"} for i in (3, 1, 2, 5, 4)]

        report = transfer_rows(destination, ITEM, rows, batch_size=2)

        assert [keys for _, keys in destination.insert_calls] == [[3, 1], [2, 5], [4]]
        assert report.mode == PRE_ORDERED
        assert report.status == MIGRATED
        assert report.inserted == 5

    def test_empty_rows(self):
        destination = FakeStore.for_tables([ITEM])
        report = transfer_rows(destination, ITEM, [], batch_size=2)
        assert report.status == EMPTY
        assert destination.insert_calls == []

    def test_failure_stops_remaining_chunks(self):
        destination = FakeStore.for_tables([ITEM])
        destination.fail_inserts["Item"] = "check constraint"

        report = transfer_rows(destination, ITEM, items(6), batch_size=2)

        assert report.status == FAILED
        assert len(destination.insert_calls) == 1


class TestInterruptedTransfer:

    def test_read_error_carries_partial_counts(self):
        source, destination = stores(items(12))
        source.read_errors["Item"] = 1

        with pytest.raises(StoreError) as exc:
            transfer_paginated(source, destination, ITEM, batch_size=5)

        partial = exc.value.report
        assert partial.status == FAILED
        assert partial.inserted == 5
        assert "cannot read Item" in partial.message

    def test_lost_connection_carries_partial_counts(self):
        destination = FakeStore.for_tables([ITEM])
        calls = []

        def drop_after_first_chunk(table, done, total):
            calls.append(done)
            destination.disconnect_on.add("Item")

        with pytest.raises(StoreConnectionError) as exc:
            transfer_rows(destination, ITEM, items(6), batch_size=2, on_progress=drop_after_first_chunk)

        assert calls == [2]
        assert exc.value.report.inserted == 2
        assert exc.value.report.status == FAILED
