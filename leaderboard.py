import json
import logging
import os
import uuid
import datetime as dt
from typing import Dict, Any, Optional, List, Tuple

from database import KeyValueStore
from sudoku_logic import SUPPORTED_MODES

logger = logging.getLogger(__name__)
if not logger.hasHandlers():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(module)s:%(lineno)d] - %(message)s')

LEADERBOARD_MAX_ENTRIES = int(os.getenv("LEADERBOARD_MAX_ENTRIES", "100"))
USER_STATS_HASH = "user_stats"

# Read-modify-write on user_stats is not atomic: two submissions racing for the
# same user can lose one statistics update (last write wins).


def leaderboard_key(mode: str) -> str:
    return f"leaderboard:{mode}"

def user_games_key(user_id: str) -> str:
    return f"user_games:{user_id}"

def _empty_mode_stats() -> Dict[str, Any]:
    return {"count": 0, "bestTime": None, "totalTime": 0}

def empty_user_stats() -> Dict[str, Any]:
    return {
        "totalGames": 0,
        "bestTime": None,
        "totalTime": 0,
        "gamesByMode": {mode: _empty_mode_stats() for mode in SUPPORTED_MODES},
    }

def _average(total: int, count: int) -> Optional[int]:
    return round(total / count) if count > 0 else None

def _parse_entry(member: str, score: float) -> Optional[Dict[str, Any]]:
    try:
        record = json.loads(member)
        if not isinstance(record, dict):
            raise ValueError(f"expected an object, got {type(record).__name__}")
    except ValueError as e:  # json.JSONDecodeError is a ValueError
        logger.error(f"Failed to parse leaderboard record {member!r}: {e}")
        return None
    time_taken = int(score)
    return {**record, "time": time_taken, "date": record.get("completedAt")}

def _parse_entries(rows: List[Tuple[str, float]]) -> List[Tuple[int, Dict[str, Any]]]:
    """Parse (member, score) rows, keeping each entry's 1-based position in ``rows``."""
    parsed = []
    for position, (member, score) in enumerate(rows, start=1):
        entry = _parse_entry(member, score)
        if entry is not None:
            parsed.append((position, entry))
    return parsed


# --- Write path ---
def update_stats(store: KeyValueStore, user_id: str, mode: str, time_taken: int) -> Dict[str, Any]:
    stats = get_raw_user_stats(store, user_id)

    stats["totalGames"] += 1
    stats["totalTime"] += time_taken
    if stats["bestTime"] is None or time_taken < stats["bestTime"]:
        stats["bestTime"] = time_taken

    mode_stats = stats["gamesByMode"].setdefault(mode, _empty_mode_stats())
    mode_stats["count"] += 1
    mode_stats["totalTime"] += time_taken
    if mode_stats["bestTime"] is None or time_taken < mode_stats["bestTime"]:
        mode_stats["bestTime"] = time_taken

    store.hash_set(USER_STATS_HASH, user_id, json.dumps(stats))
    logger.info(f"Stats updated for user {user_id}: games={stats['totalGames']}, best={stats['bestTime']} (mode {mode})")
    return stats

def record_completion(store: KeyValueStore, mode: str, user_id: str, username: str,
                      game_id: str, time_taken: int) -> Dict[str, Any]:
    record = {
        "id": str(uuid.uuid4()),
        "userId": user_id,
        "username": username,
        "gameId": game_id,
        "mode": mode,
        "time": time_taken,
        "completedAt": dt.datetime.now(dt.timezone.utc).isoformat(),
    }
    payload = json.dumps(record)
    store.ordered_set_add(leaderboard_key(mode), time_taken, payload)
    store.list_prepend(user_games_key(user_id), payload)
    update_stats(store, user_id, mode, time_taken)
    logger.info(f"Completion {record['id']} recorded for {username} ({user_id}): {time_taken}s on {mode}, game {game_id}")
    return record

def initialize_user_stats(store: KeyValueStore, user_id: str) -> None:
    store.hash_set(USER_STATS_HASH, user_id, json.dumps(empty_user_stats()))

def reset_user_records(store: KeyValueStore, user_id: str) -> None:
    """Clear a user's history and statistics. Leaderboard entries are kept."""
    store.delete(user_games_key(user_id))
    initialize_user_stats(store, user_id)
    logger.warning(f"History and stats reset for user {user_id}.")


# --- Read path ---
def get_leaderboard(store: KeyValueStore, mode: str, limit: int = 50) -> List[Dict[str, Any]]:
    safe_limit = max(0, min(limit, LEADERBOARD_MAX_ENTRIES))
    if safe_limit == 0:
        return []
    rows = store.ordered_set_range(leaderboard_key(mode), 0, safe_limit - 1)
    entries = [entry for _, entry in _parse_entries(rows)]
    logger.info(f"Fetched {len(entries)} leaderboard entries for mode '{mode}' limit {safe_limit}")
    return entries

def get_all_leaderboards(store: KeyValueStore, limit: int = 10) -> Dict[str, List[Dict[str, Any]]]:
    return {mode: get_leaderboard(store, mode, limit) for mode in SUPPORTED_MODES}

def get_rank(store: KeyValueStore, mode: str, username: str) -> Tuple[Optional[int], Optional[Dict[str, Any]]]:
    rows = store.ordered_set_range(leaderboard_key(mode), 0, -1)
    best_entry = None
    best_rank = None
    for position, entry in _parse_entries(rows):
        if entry.get("username") != username:
            continue
        if best_entry is None or entry["time"] < best_entry["time"]:
            best_entry = entry
            best_rank = position
    return best_rank, best_entry

def get_best_records(store: KeyValueStore, username: str) -> Dict[str, Dict[str, Any]]:
    best_records = {}
    for mode in SUPPORTED_MODES:
        rank, entry = get_rank(store, mode, username)
        if entry is not None:
            best_records[mode] = {**entry, "rank": rank}
    return best_records

def get_stats(store: KeyValueStore, mode: str) -> Dict[str, Any]:
    key = leaderboard_key(mode)
    total_records = store.ordered_set_cardinality(key)
    fastest_time = None
    fastest_user = None
    fastest = store.ordered_set_range(key, 0, 0)
    if fastest:
        entry = _parse_entry(*fastest[0])
        if entry is not None:
            fastest_time = entry["time"]
            fastest_user = entry.get("username")
    return {"totalRecords": total_records, "fastestTime": fastest_time, "fastestUser": fastest_user}

def get_leaderboard_stats(store: KeyValueStore) -> Dict[str, Dict[str, Any]]:
    return {mode: get_stats(store, mode) for mode in SUPPORTED_MODES}

def _is_time(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)

def _check_totals(stats: Any, count_field: str) -> None:
    if not isinstance(stats, dict):
        raise ValueError(f"expected an object, got {type(stats).__name__}")
    if not _is_time(stats.get(count_field)) or not _is_time(stats.get("totalTime")):
        raise ValueError(f"'{count_field}' and 'totalTime' must be integers")
    if stats.get("bestTime") is not None and not _is_time(stats["bestTime"]):
        raise ValueError("'bestTime' must be an integer or null")

def get_raw_user_stats(store: KeyValueStore, user_id: str) -> Dict[str, Any]:
    raw = store.hash_get(USER_STATS_HASH, user_id)
    if raw is None:
        return empty_user_stats()
    try:
        stats = json.loads(raw)
        _check_totals(stats, "totalGames")
        games_by_mode = stats.setdefault("gamesByMode", {})
        if not isinstance(games_by_mode, dict):
            raise ValueError("'gamesByMode' must be an object")
        for mode_stats in games_by_mode.values():
            _check_totals(mode_stats, "count")
    except ValueError as e:  # json.JSONDecodeError is a ValueError
        logger.error(f"Corrupt stats record for user {user_id}, starting from zero: {e}")
        return empty_user_stats()
    return stats

def get_user_stats(store: KeyValueStore, user_id: str) -> Dict[str, Any]:
    stats = get_raw_user_stats(store, user_id)
    overall = {
        "totalGames": stats["totalGames"],
        "bestTime": stats["bestTime"],
        "averageTime": _average(stats["totalTime"], stats["totalGames"]),
        "totalTime": stats["totalTime"],
    }
    by_mode = [
        {
            "mode": mode,
            "gamesPlayed": mode_stats["count"],
            "bestTime": mode_stats["bestTime"],
            "averageTime": _average(mode_stats["totalTime"], mode_stats["count"]),
            "totalTime": mode_stats["totalTime"],
        }
        for mode, mode_stats in stats["gamesByMode"].items()
        if mode_stats["count"] > 0
    ]
    return {"overall": overall, "byMode": by_mode}

def get_user_games(store: KeyValueStore, user_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
    key = user_games_key(user_id)
    games = []
    for raw in store.list_range(key, offset, offset + limit - 1):
        try:
            game = json.loads(raw)
            if not isinstance(game, dict):
                raise ValueError(f"expected an object, got {type(game).__name__}")
        except ValueError as e:
            logger.error(f"Failed to parse game record for user {user_id}: {e}")
            continue
        games.append(game)
    return games, store.list_length(key)
