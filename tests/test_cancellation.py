from __future__ import annotations

import os

import pytest

import sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from cancellation import CHECK_POINTS, CancelToken, OperationCancelled, PointCounter, check, row_blocks


def test_token_state():
    tok = CancelToken()
    assert not tok.is_cancelled
    tok.check("noop")
    tok.cancel()
    assert tok.is_cancelled
    with pytest.raises(OperationCancelled, match="scan interrupted"):
        tok.check("scan")


def test_check_without_token_never_raises():
    check(None, "anything")


def test_row_blocks_cover_all_rows():
    assert list(row_blocks(0)) == []
    assert list(row_blocks(16)) == [(0, 16)]
    assert list(row_blocks(40)) == [(0, 16), (16, 32), (32, 40)]


def test_row_blocks_stop_after_current_block():
    tok = CancelToken()
    seen = []
    with pytest.raises(OperationCancelled):
        for r0, r1 in row_blocks(64, tok, "rows"):
            seen.append((r0, r1))
            tok.cancel()
    assert seen == [(0, 16)]


def test_point_counter_polls_periodically():
    tok = CancelToken()
    tok.cancel()
    counter = PointCounter(tok, "points")
    for _ in range(CHECK_POINTS - 1):
        counter.tick()
    with pytest.raises(OperationCancelled):
        counter.tick()
