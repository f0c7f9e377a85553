"""Tests for DirectoryResolver.

The destination layouts mirror the situations a real backup drive ends up
in: first run, interrupted runs at various points in a drive's history, and
a ``latest`` link whose target has been deleted.
"""

import logging
from unittest.mock import patch

import pytest

from tmbackup.latest import SymlinkIntegrityError
from tmbackup.resolver import DirectoryResolver, ResolutionCase
from tmbackup.store import LocalStore, StoreError


# 2029-01-01-000000 written with Arabic-Indic digits
ARABIC_INDIC_NAME = "\u0662\u0660\u0662\u0669-\u0660\u0661-\u0660\u0661-\u0660\u0660\u0660\u0660\u0660\u0660"


NOW = "2024-06-15-190519"

RESUME_MESSAGE = (
    "backup.inprogress already exists - the previous backup failed or was "
    "interrupted. Backup will resume from there."
)


def resolve(root, in_progress=None):
    return DirectoryResolver(LocalStore(), str(root)).resolve(NOW, in_progress=in_progress)


class TestFreshDestination:
    """No snapshots yet."""

    def test_empty(self, make_destination, caplog):
        root = make_destination(name="empty")

        with caplog.at_level(logging.INFO):
            result = resolve(root)

        assert result.dest == f"{root}/{NOW}"
        assert result.link_base is None
        assert result.case is ResolutionCase.FIRST_BACKUP
        assert "No previous backup - creating new one." in caplog.text

    def test_marker_without_snapshots(self, make_destination):
        root = make_destination(in_progress=True)

        result = resolve(root)

        assert result.link_base is None
        assert result.case is ResolutionCase.FIRST_BACKUP


class TestIncremental:
    """No in-progress marker: link against latest, or the newest snapshot."""

    def test_first_backup_done(self, make_destination):
        root = make_destination(
            name="1st_backup",
            snapshots=["2022-04-19-202210"],
            latest="2022-04-19-202210",
        )

        result = resolve(root)

        assert result.dest == f"{root}/{NOW}"
        assert result.link_base == f"{root}/2022-04-19-202210"
        assert result.case is ResolutionCase.INCREMENTAL

    def test_second_backup_done(self, make_destination):
        root = make_destination(
            name="2nd_backup",
            snapshots=["2022-04-19-202210", "2022-10-25-213541"],
            latest="2022-10-25-213541",
        )

        assert resolve(root).link_base == f"{root}/2022-10-25-213541"

    def test_latest_wins_over_newest(self, make_destination):
        root = make_destination(
            snapshots=["2022-04-19-202210", "2022-10-25-213541"],
            latest="2022-04-19-202210",
        )

        assert resolve(root).link_base == f"{root}/2022-04-19-202210"

    def test_missing_latest_uses_newest(self, make_destination):
        root = make_destination(snapshots=["2022-04-19-202210", "2022-10-25-213541"])

        assert resolve(root).link_base == f"{root}/2022-10-25-213541"

    def test_bad_symlink_uses_newest(self, make_destination, caplog):
        root = make_destination(
            name="5th_backup_and_bad_symlink",
            snapshots=[
                "2022-04-19-202210",
                "2022-10-25-213541",
                "2023-04-30-181436",
                "2023-07-27-213919",
                "2023-09-25-170232",
            ],
            latest="non-existant-directory",
        )

        with caplog.at_level(logging.WARNING):
            result = resolve(root)

        assert result.link_base == f"{root}/2023-09-25-170232"
        assert "Ignoring sym link." in caplog.text
        assert (root / "2023-09-25-170232").is_dir()

    def test_nothing_renamed(self, make_destination):
        root = make_destination(snapshots=["2022-04-19-202210"])

        resolve(root)

        assert (root / "2022-04-19-202210").is_dir()
        assert not (root / NOW).exists()


class TestResume:
    """In-progress marker present: the newest snapshot is resumed."""

    def test_first_backup_interrupted(self, make_destination, caplog):
        root = make_destination(
            name="1st_backup_interrupted",
            snapshots=["2022-04-19-202210"],
            in_progress=True,
        )

        with caplog.at_level(logging.INFO):
            result = resolve(root)

        assert result.case is ResolutionCase.RESUMED
        assert result.dest == f"{root}/{NOW}"
        assert result.link_base is None
        assert result.resumed_from == f"{root}/2022-04-19-202210"
        assert (root / NOW).is_dir()
        assert not (root / "2022-04-19-202210").exists()
        assert RESUME_MESSAGE in caplog.text

    def test_second_backup_interrupted(self, make_destination):
        root = make_destination(
            name="2nd_backup_interrupted",
            snapshots=["2022-04-19-202210", "2022-10-25-213541"],
            latest="2022-04-19-202210",
            in_progress=True,
        )

        result = resolve(root)

        assert result.link_base == f"{root}/2022-04-19-202210"
        assert (root / NOW).is_dir()
        assert not (root / "2022-10-25-213541").exists()

    def test_sixth_backup_interrupted(self, make_destination):
        root = make_destination(
            name="6th_backup_interrupted",
            snapshots=[
                "2022-04-19-202210",
                "2022-10-25-213541",
                "2023-04-30-181436",
                "2023-07-27-213919",
                "2023-09-25-170232",
                "2023-11-30-181650",
            ],
            latest="2023-09-25-170232",
            in_progress=True,
        )

        result = resolve(root)

        assert result.link_base == f"{root}/2023-09-25-170232"
        assert result.resumed_from == f"{root}/2023-11-30-181650"
        assert not (root / "2023-11-30-181650").exists()

    def test_multiple_backups_interrupted(self, make_destination):
        root = make_destination(
            snapshots=[
                "2022-04-19-202210",
                "2022-10-25-213541",
                "2023-04-30-181436",
                "2023-07-27-213919",
                "2023-09-25-170232",
                "2023-11-30-181650",
                "2023-12-05-211641",
                "2024-01-29-153423",
            ],
            latest="2023-09-25-170232",
            in_progress=True,
        )

        result = resolve(root)

        assert result.link_base == f"{root}/2023-09-25-170232"
        assert result.resumed_from == f"{root}/2024-01-29-153423"
        assert (root / "2023-12-05-211641").is_dir()

    def test_interrupted_with_bad_symlink(self, make_destination):
        root = make_destination(
            name="4th_backup_interrupted_and_bad_symlink",
            snapshots=[
                "2022-04-19-202210",
                "2022-10-25-213541",
                "2023-04-30-181436",
                "2023-07-27-213919",
            ],
            latest="non-existant-directory",
            in_progress=True,
        )

        result = resolve(root)

        assert result.link_base == f"{root}/2023-04-30-181436"
        assert result.resumed_from == f"{root}/2023-07-27-213919"

    def test_interrupted_latest_was_newest(self, make_destination):
        # latest names the snapshot being resumed, so the link base falls
        # back to the snapshot before it
        root = make_destination(
            snapshots=["2022-04-19-202210", "2022-10-25-213541"],
            latest="2022-10-25-213541",
            in_progress=True,
        )

        result = resolve(root)

        assert result.link_base == f"{root}/2022-04-19-202210"

    def test_same_timestamp_is_not_renamed(self, make_destination):
        root = make_destination(
            snapshots=["2022-04-19-202210", NOW],
            in_progress=True,
        )

        result = resolve(root)

        assert result.dest == f"{root}/{NOW}"
        assert result.link_base == f"{root}/2022-04-19-202210"
        assert (root / NOW).is_dir()

    def test_non_ascii_digit_directory_is_not_resumed(self, make_destination):
        root = make_destination(
            snapshots=["2024-01-01-000000", ARABIC_INDIC_NAME],
            in_progress=True,
        )

        result = resolve(root)

        assert result.resumed_from == f"{root}/2024-01-01-000000"
        assert result.link_base is None
        assert (root / ARABIC_INDIC_NAME).is_dir()
        assert (root / NOW).is_dir()

    def test_explicit_flag_overrides_marker(self, make_destination):
        root = make_destination(snapshots=["2022-04-19-202210"], in_progress=True)

        result = resolve(root, in_progress=False)

        assert result.case is ResolutionCase.INCREMENTAL
        assert (root / "2022-04-19-202210").is_dir()


class TestFailures:
    """Failures leave the destination untouched."""

    def test_escaping_latest_aborts_before_rename(self, make_destination):
        root = make_destination(
            snapshots=["2022-04-19-202210"],
            latest="../elsewhere",
            in_progress=True,
        )

        with pytest.raises(SymlinkIntegrityError):
            resolve(root)

        assert (root / "2022-04-19-202210").is_dir()
        assert not (root / NOW).exists()

    def test_rename_failure_propagates(self, make_destination):
        root = make_destination(snapshots=["2022-04-19-202210"], in_progress=True)

        with patch.object(LocalStore, "rename", side_effect=StoreError("busy")):
            with pytest.raises(StoreError, match="busy"):
                resolve(root)
