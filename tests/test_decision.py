"""Tests for the lid/display decision table."""

import pytest

from clamshell import DesiredMode, DisplayState, LidState, decide


class TestDecide:
    """decide() inhibits only for a closed lid with an external display."""

    @pytest.mark.parametrize(
        "lid, display, expected",
        [
            (LidState.CLOSED, DisplayState.EXTERNAL_ATTACHED, DesiredMode.INHIBIT),
            (LidState.CLOSED, DisplayState.EXTERNAL_ABSENT, DesiredMode.ALLOW),
            (LidState.OPEN, DisplayState.EXTERNAL_ATTACHED, DesiredMode.ALLOW),
            (LidState.OPEN, DisplayState.EXTERNAL_ABSENT, DesiredMode.ALLOW),
        ],
    )
    def test_truth_table(self, lid, display, expected):
        assert decide(lid, display) is expected

    def test_deterministic(self):
        """Same inputs always give the same answer."""
        results = {
            decide(LidState.CLOSED, DisplayState.EXTERNAL_ATTACHED) for _ in range(10)
        }
        assert results == {DesiredMode.INHIBIT}
