from __future__ import annotations

from unittest.mock import patch

from tissue_migrate.services.progress import ProgressTracker, is_tty_enabled


def test_is_tty_enabled_returns_stdout_isatty():
    with patch("sys.stdout.isatty", return_value=True):
        assert is_tty_enabled() is True
    with patch("sys.stdout.isatty", return_value=False):
        assert is_tty_enabled() is False


class TestProgressTracker:
    def test_init_with_tty_enabled(self):
        with patch("tissue_migrate.services.progress.is_tty_enabled", return_value=True), \
             patch("tissue_migrate.services.progress.tqdm") as mock_tqdm:
            tracker = ProgressTracker(description="Migrating rows")
            assert tracker.enabled is True
            mock_tqdm.assert_called_once_with(
                total=None,
                desc="Migrating rows",
                unit="row",
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )

    def test_init_without_tty(self):
        with patch("tissue_migrate.services.progress.is_tty_enabled", return_value=False), \
             patch("tissue_migrate.services.progress.tqdm") as mock_tqdm:
            tracker = ProgressTracker(10)
            tracker.advance()
            tracker.advance(rejected=True)
            tracker.set_postfix(ok=1, rejected=1)
            tracker.close()
            mock_tqdm.assert_not_called()
            assert tracker.rows == 2
            assert tracker.rejected == 1

    def test_advance_updates_bar_and_context_closes(self):
        with patch("tissue_migrate.services.progress.is_tty_enabled", return_value=True), \
             patch("tissue_migrate.services.progress.tqdm") as mock_tqdm:
            pbar = mock_tqdm.return_value
            with ProgressTracker(3) as tracker:
                tracker.advance()
                tracker.set_postfix(ok=1)
            pbar.update.assert_called_once_with(1)
            pbar.set_postfix.assert_called_once_with(ok=1)
            pbar.close.assert_called_once()
            assert tracker.pbar is None
