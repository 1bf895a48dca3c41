"""Tests for game sessions: generation, checking, hints and submission outcomes."""
import math

import pytest

from game_logic import (
    GAME_TTL_SECONDS,
    HintOutcome,
    SubmitOutcome,
    check_answer,
    create_game,
    load_game,
    request_hint,
    submit_game,
)
from leaderboard import get_leaderboard, get_raw_user_stats
from sudoku_logic import MAX_HINTS, deep_copy, is_complete_grid


def _relabel(grid):
    """Swap values 1 and 2: still a valid grid, but a different one."""
    swap = {1: 2, 2: 1}
    return [[swap.get(value, value) for value in row] for row in grid]


@pytest.fixture
def game(store):
    return create_game(store, "4x4")


class TestCreateGame:
    @pytest.mark.parametrize("mode,size,difficulty", [("4x4", 4, 0.4), ("5x5", 5, 0.5), ("6x6", 6, 0.6)])
    def test_session_is_stored(self, store, mode, size, difficulty):
        game = create_game(store, mode)
        stored = load_game(store, game["id"])
        assert stored == game
        assert stored["size"] == size
        assert stored["isCompleted"] is False
        assert is_complete_grid(stored["solution"])
        blanks = sum(1 for row in stored["puzzle"] for value in row if value == 0)
        assert blanks == math.floor(size * size * difficulty)

    def test_session_expires(self, store, clock, game):
        clock.advance(GAME_TTL_SECONDS)
        assert load_game(store, game["id"]) is None

    def test_corrupt_session_is_missing(self, store):
        store.set("game:broken", "{oops")
        assert load_game(store, "broken") is None


class TestCheckAnswer:
    def test_correct(self, store, game):
        assert check_answer(store, game["id"], game["solution"]) == {"isComplete": True, "isCorrect": True}

    def test_valid_but_different(self, store, game):
        result = check_answer(store, game["id"], _relabel(game["solution"]))
        assert result == {"isComplete": True, "isCorrect": False}

    def test_unfinished(self, store, game):
        assert check_answer(store, game["id"], game["puzzle"]) == {"isComplete": False, "isCorrect": False}

    def test_unknown_game(self, store):
        assert check_answer(store, "missing", [[0]]) is None


class TestHints:
    def test_hints_are_limited(self, store, game):
        for used in range(1, MAX_HINTS + 1):
            result = request_hint(store, game["id"])
            assert result["outcome"] == HintOutcome.OK
            assert result["hintsLeft"] == MAX_HINTS - used
            hint = result["hint"]
            assert game["puzzle"][hint["row"]][hint["col"]] == 0
            assert hint["value"] == game["solution"][hint["row"]][hint["col"]]
        assert request_hint(store, game["id"])["outcome"] == HintOutcome.NO_HINTS_LEFT

    def test_uses_player_board(self, store, game):
        board = deep_copy(game["solution"])
        board[3][1] = 0
        result = request_hint(store, game["id"], board)
        assert result["hint"] == {"row": 3, "col": 1, "value": game["solution"][3][1]}

    def test_full_board(self, store, game):
        result = request_hint(store, game["id"], game["solution"])
        assert result["outcome"] == HintOutcome.NO_EMPTY_CELLS
        assert load_game(store, game["id"])["hintsUsed"] == 0

    def test_wrong_size(self, store, game):
        assert request_hint(store, game["id"], [[0] * 6 for _ in range(6)])["outcome"] == HintOutcome.INVALID_SHAPE

    def test_unknown_game(self, store):
        assert request_hint(store, "missing")["outcome"] == HintOutcome.NOT_FOUND


class TestSubmit:
    def test_accepted(self, store, game):
        result = submit_game(store, game["id"], game["solution"], 75, "u1", "alice")
        assert result["outcome"] == SubmitOutcome.ACCEPTED
        assert result["record"]["time"] == 75
        stored = load_game(store, game["id"])
        assert stored["isCompleted"] is True
        assert stored["completedBy"] == "u1"
        assert stored["completionTime"] == 75
        assert stored["completedAt"] == result["record"]["completedAt"]
        assert get_raw_user_stats(store, "u1")["totalGames"] == 1

    def test_second_submission_conflicts(self, store, game):
        submit_game(store, game["id"], game["solution"], 75, "u1", "alice")
        result = submit_game(store, game["id"], game["solution"], 50, "u2", "bob")
        assert result["outcome"] == SubmitOutcome.ALREADY_COMPLETED
        assert len(get_leaderboard(store, "4x4", 10)) == 1
        assert get_raw_user_stats(store, "u2")["totalGames"] == 0

    def test_conflict_checked_before_grid(self, store, game):
        submit_game(store, game["id"], game["solution"], 75, "u1", "alice")
        result = submit_game(store, game["id"], [[0]], 50, "u1", "alice")
        assert result["outcome"] == SubmitOutcome.ALREADY_COMPLETED

    def test_incomplete(self, store, game):
        grid = deep_copy(game["solution"])
        grid[0][0] = 0
        assert submit_game(store, game["id"], grid, 75, "u1", "alice")["outcome"] == SubmitOutcome.INCOMPLETE

    def test_incorrect(self, store, game):
        result = submit_game(store, game["id"], _relabel(game["solution"]), 75, "u1", "alice")
        assert result["outcome"] == SubmitOutcome.INCORRECT

    def test_filled_with_duplicates_is_incorrect(self, store, game):
        grid = [[1] * 4 for _ in range(4)]
        assert submit_game(store, game["id"], grid, 75, "u1", "alice")["outcome"] == SubmitOutcome.INCORRECT

    def test_wrong_size(self, store, game):
        grid = [[1] * 5 for _ in range(5)]
        assert submit_game(store, game["id"], grid, 75, "u1", "alice")["outcome"] == SubmitOutcome.INVALID_SHAPE

    def test_unknown_game(self, store):
        assert submit_game(store, "missing", [[1]], 75, "u1", "alice")["outcome"] == SubmitOutcome.NOT_FOUND

    def test_rejections_leave_leaderboard_alone(self, store, game):
        submit_game(store, game["id"], _relabel(game["solution"]), 75, "u1", "alice")
        assert get_leaderboard(store, "4x4", 10) == []
        assert load_game(store, game["id"])["isCompleted"] is False

    def test_malformed_stats_do_not_block_completion(self, store, game):
        store.hash_set("user_stats", "u1", "[]")
        result = submit_game(store, game["id"], game["solution"], 75, "u1", "alice")
        assert result["outcome"] == SubmitOutcome.ACCEPTED
        assert load_game(store, game["id"])["isCompleted"] is True
        assert get_raw_user_stats(store, "u1")["totalGames"] == 1
        again = submit_game(store, game["id"], game["solution"], 60, "u1", "alice")
        assert again["outcome"] == SubmitOutcome.ALREADY_COMPLETED
        assert len(get_leaderboard(store, "4x4", 10)) == 1

    def test_hint_after_completion(self, store, game):
        submit_game(store, game["id"], game["solution"], 75, "u1", "alice")
        assert request_hint(store, game["id"])["outcome"] == HintOutcome.ALREADY_COMPLETED
