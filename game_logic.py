import json
import logging
import os
import uuid
import datetime as dt
from enum import Enum
from typing import Dict, Any, Optional

from database import KeyValueStore
from leaderboard import record_completion
from sudoku_logic import (
    Grid,
    MAX_HINTS,
    carve_puzzle,
    generate_solution,
    get_difficulty_for_mode,
    get_size_from_mode,
    grids_equal,
    is_complete_grid,
    pick_hint,
)

logger = logging.getLogger(__name__)
if not logger.hasHandlers():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(module)s:%(lineno)d] - %(message)s')

GAME_TTL_SECONDS = int(os.getenv("GAME_TTL_SECONDS", "3600"))


class SubmitOutcome(str, Enum):
    ACCEPTED = "accepted"
    NOT_FOUND = "not_found"
    ALREADY_COMPLETED = "already_completed"
    INVALID_SHAPE = "invalid_shape"
    INCOMPLETE = "incomplete"
    INCORRECT = "incorrect"


class HintOutcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    ALREADY_COMPLETED = "already_completed"
    INVALID_SHAPE = "invalid_shape"
    NO_HINTS_LEFT = "no_hints_left"
    NO_EMPTY_CELLS = "no_empty_cells"


def game_key(game_id: str) -> str:
    return f"game:{game_id}"

def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()

def _has_size(grid: Grid, size: int) -> bool:
    return len(grid) == size and all(len(row) == size for row in grid)

def _has_blanks(grid: Grid) -> bool:
    return any(value == 0 for row in grid for value in row)

def _save_game(store: KeyValueStore, game: Dict[str, Any]) -> None:
    store.set_with_expiry(game_key(game["id"]), json.dumps(game), GAME_TTL_SECONDS)

def public_view(game: Dict[str, Any]) -> Dict[str, Any]:
    """Session fields that are safe to send to a player (no solution)."""
    return {
        "id": game["id"],
        "mode": game["mode"],
        "puzzle": game["puzzle"],
        "isCompleted": game.get("isCompleted", False),
        "createdAt": game.get("createdAt"),
        "hintsUsed": game.get("hintsUsed", 0),
    }


def create_game(store: KeyValueStore, mode: str) -> Dict[str, Any]:
    size = get_size_from_mode(mode)
    difficulty = get_difficulty_for_mode(mode)
    solution = generate_solution(size)
    puzzle = carve_puzzle(solution, difficulty)
    game = {
        "id": str(uuid.uuid4()),
        "mode": mode,
        "size": size,
        "puzzle": puzzle,
        "solution": solution,
        "createdAt": _now_iso(),
        "isCompleted": False,
        "hintsUsed": 0,
    }
    _save_game(store, game)
    logger.info(f"--- Game {game['id']} created (mode {mode}, difficulty {difficulty}) ---")
    return game

def load_game(store: KeyValueStore, game_id: str) -> Optional[Dict[str, Any]]:
    raw = store.get(game_key(game_id))
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"Stored game {game_id} is corrupt, treating it as missing: {e}")
        return None

def check_answer(store: KeyValueStore, game_id: str, grid: Grid) -> Optional[Dict[str, bool]]:
    game = load_game(store, game_id)
    if game is None:
        return None
    if not _has_size(grid, game["size"]):
        return {"isComplete": False, "isCorrect": False}
    result = {
        "isComplete": is_complete_grid(grid),
        "isCorrect": grids_equal(grid, game["solution"]),
    }
    logger.info(f"Answer check for game {game_id}: {result}")
    return result

def request_hint(store: KeyValueStore, game_id: str, grid: Optional[Grid] = None) -> Dict[str, Any]:
    game = load_game(store, game_id)
    if game is None:
        return {"outcome": HintOutcome.NOT_FOUND}
    if game.get("isCompleted"):
        return {"outcome": HintOutcome.ALREADY_COMPLETED}
    hints_used = game.get("hintsUsed", 0)
    if hints_used >= MAX_HINTS:
        return {"outcome": HintOutcome.NO_HINTS_LEFT, "hintsLeft": 0}
    board = grid if grid is not None else game["puzzle"]
    if not _has_size(board, game["size"]):
        return {"outcome": HintOutcome.INVALID_SHAPE}
    hint = pick_hint(board, game["solution"])
    if hint is None:
        return {"outcome": HintOutcome.NO_EMPTY_CELLS, "hintsLeft": MAX_HINTS - hints_used}
    game["hintsUsed"] = hints_used + 1
    _save_game(store, game)
    logger.info(f"Hint {game['hintsUsed']}/{MAX_HINTS} given for game {game_id} at ({hint['row']}, {hint['col']}).")
    return {"outcome": HintOutcome.OK, "hint": hint, "hintsLeft": MAX_HINTS - game["hintsUsed"]}

def submit_game(store: KeyValueStore, game_id: str, grid: Grid, time_taken: int,
                user_id: str, username: str) -> Dict[str, Any]:
    game = load_game(store, game_id)
    if game is None:
        return {"outcome": SubmitOutcome.NOT_FOUND}
    # Checked before validation so a completed game can never be credited twice.
    if game.get("isCompleted"):
        logger.info(f"Game {game_id} already completed by {game.get('completedBy')}; rejecting submission from {username}.")
        return {"outcome": SubmitOutcome.ALREADY_COMPLETED}
    if not _has_size(grid, game["size"]):
        return {"outcome": SubmitOutcome.INVALID_SHAPE}
    if _has_blanks(grid):
        return {"outcome": SubmitOutcome.INCOMPLETE}
    if not is_complete_grid(grid) or not grids_equal(grid, game["solution"]):
        return {"outcome": SubmitOutcome.INCORRECT}

    record = record_completion(store, game["mode"], user_id, username, game_id, time_taken)

    game["isCompleted"] = True
    game["completedBy"] = user_id
    game["completedAt"] = record["completedAt"]
    game["completionTime"] = time_taken
    _save_game(store, game)
    logger.info(f"Game {game_id} completed by {username} in {time_taken}s.")
    return {"outcome": SubmitOutcome.ACCEPTED, "record": record}
