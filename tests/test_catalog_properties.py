"""Property-based tests for snapshot names and catalog ordering."""

from datetime import datetime
from typing import List

import hypothesis.strategies as st
from hypothesis import given

from tmbackup.catalog import SnapshotCatalog, format_timestamp, parse_timestamp


moments = st.datetimes(
    min_value=datetime(1000, 1, 1),
    max_value=datetime(9999, 12, 31, 23, 59, 59),
).map(lambda dt: dt.replace(microsecond=0))


class TestTimestampRoundTrip:
    """Names and datetimes convert into each other without loss."""

    @given(moment=moments)
    def test_format_then_parse(self, moment: datetime):
        assert parse_timestamp(format_timestamp(moment)) == moment

    @given(a=moments, b=moments)
    def test_lexicographic_order_is_chronological(self, a: datetime, b: datetime):
        assert (format_timestamp(a) < format_timestamp(b)) == (a < b)


class TestCatalogOrdering:
    """A catalog is always strictly newest first."""

    @given(
        snapshots=st.lists(moments, max_size=20),
        noise=st.lists(
            st.sampled_from([
                "latest",
                "backup.marker",
                "backup.inprogress",
                "tmp",
                "\u0662\u0660\u0662\u0669-\u0660\u0661-\u0660\u0661-\u0660\u0660\u0660\u0660\u0660\u0660",
                "\uff12\uff10\uff12\uff14-06-15-190519",
            ]),
            max_size=4,
        ),
    )
    def test_descending_and_filtered(self, snapshots: List[datetime], noise: List[str]):
        names = [format_timestamp(m) for m in snapshots] + noise

        catalog = SnapshotCatalog.from_names("/b", names)

        assert list(catalog.names) == sorted((format_timestamp(m) for m in snapshots), reverse=True)
        assert all(a >= b for a, b in zip(catalog.names, catalog.names[1:]))
        assert not set(noise) & set(catalog.names)
        if catalog:
            assert catalog.most_recent == max(catalog.names)
            assert catalog.oldest == min(catalog.names)
