from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from typing import List, Dict, Any, Optional, Annotated
from pydantic import BaseModel, Field, field_validator
from datetime import timedelta

import logging
import os
import datetime as dt

from auth_utils import (
    verify_password,
    get_password_hash,
    create_access_token,
    decode_access_token,
    ACCESS_TOKEN_EXPIRE_MINUTES
)
from database import (
    KeyValueStore,
    StoreError,
    get_store,
    get_user_by_username,
    create_user_in_store,
    update_user_password,
)
from game_logic import (
    HintOutcome,
    SubmitOutcome,
    create_game,
    load_game,
    check_answer,
    request_hint,
    submit_game,
    public_view,
)
from leaderboard import (
    LEADERBOARD_MAX_ENTRIES,
    get_leaderboard,
    get_all_leaderboards,
    get_rank,
    get_best_records,
    get_leaderboard_stats,
    get_user_stats,
    get_user_games,
    initialize_user_stats,
    reset_user_records,
)
from sudoku_logic import SUPPORTED_MODES, is_valid_mode

# Configure logging
if not logging.getLogger().hasHandlers():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(module)s:%(lineno)d] - %(message)s')
logger = logging.getLogger(__name__)

ALL_LEADERBOARDS_MAX_LIMIT = 50
USER_GAMES_MAX_LIMIT = 100
INVALID_MODE_DETAIL = f"Invalid game mode. Supported modes: {', '.join(SUPPORTED_MODES)}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup: checking store connection...")
    store = app.dependency_overrides.get(get_store, get_store)()
    store.ping()
    logger.info("Removing expired game sessions...")
    store.purge_expired()
    logger.info("Startup tasks complete.")
    yield


app = FastAPI(title="Sudoku Arena", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"Store failure on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"success": False, "detail": "Storage backend error."})


# --- Pydantic Models for Auth & Users ---
class Token(BaseModel):
    access_token: str
    token_type: str

class UserCreate(BaseModel):
    username: Annotated[str, Field(min_length=3, max_length=20)]
    password: Annotated[str, Field(min_length=6, max_length=100)]

class LoginPayload(BaseModel):
    username: str
    password: str

class ChangePasswordPayload(BaseModel):
    old_password: Annotated[str, Field(alias="oldPassword")]
    new_password: Annotated[str, Field(min_length=6, max_length=100, alias="newPassword")]

class CurrentUser(BaseModel):
    id: str
    username: str


# --- Pydantic Models for Game Payloads ---
def _check_grid_shape(grid: List[List[int]]) -> List[List[int]]:
    size = len(grid)
    if size == 0:
        raise ValueError("Grid must not be empty.")
    if any(len(row) != size for row in grid):
        raise ValueError("Grid must be square.")
    if any(value < 0 or value > size for row in grid for value in row):
        raise ValueError(f"Grid values must be between 0 and {size}.")
    return grid

class GenerateRequest(BaseModel):
    mode: str

class AnswerPayload(BaseModel):
    game_id: Annotated[str, Field(min_length=1, alias="gameId")]
    solution: List[List[int]]

    @field_validator('solution')
    @classmethod
    def check_solution_shape(cls, v_grid):
        return _check_grid_shape(v_grid)

class SubmitPayload(AnswerPayload):
    time: Annotated[int, Field(gt=0)]

class HintRequest(BaseModel):
    game_id: Annotated[str, Field(min_length=1, alias="gameId")]
    puzzle: Optional[List[List[int]]] = None

    @field_validator('puzzle')
    @classmethod
    def check_puzzle_shape(cls, v_grid):
        if v_grid is None:
            return v_grid
        return _check_grid_shape(v_grid)


# --- Authentication Setup & Dependency ---
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

StoreDep = Annotated[KeyValueStore, Depends(get_store)]

async def get_current_user(token: Annotated[str, Depends(oauth2_scheme)], store: StoreDep) -> CurrentUser:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    claims = decode_access_token(token)
    if claims is None:
        raise credentials_exception
    user = get_user_by_username(store, claims["username"])
    if user is None or user.get("id") != claims["user_id"]:
        raise credentials_exception
    return CurrentUser(id=user["id"], username=user["username"])

UserDep = Annotated[CurrentUser, Depends(get_current_user)]

def _issue_token(user: Dict[str, Any]) -> str:
    return create_access_token(
        user["username"],
        user["id"],
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
    )

def _authenticate(store: KeyValueStore, username: str, password: str) -> Dict[str, Any]:
    user = get_user_by_username(store, username)
    if not user or not verify_password(password, user["password"]):
        logger.warning(f"Login failed for user '{username}'. Incorrect username or password.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    logger.info(f"User '{username}' logged in successfully.")
    return user


@app.get("/health")
async def health_check(store: StoreDep):
    try:
        store.ping()
    except StoreError as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=500, detail="Store connection failed")
    return {
        "success": True,
        "message": "Server is healthy",
        "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
        "store": "connected",
    }


# AUTHENTICATION ROUTES
@app.post("/auth/register", status_code=status.HTTP_201_CREATED)
async def register_user_api(user_in: UserCreate, store: StoreDep):
    logger.info(f"Registration attempt for username: {user_in.username}")
    user = create_user_in_store(store, user_in.username, get_password_hash(user_in.password))
    if user is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Username already exists")
    initialize_user_stats(store, user["id"])
    return {"success": True, "message": "User registered successfully"}

@app.post("/auth/login")
async def login_api(payload: LoginPayload, store: StoreDep):
    logger.info(f"Login attempt for username: {payload.username}")
    user = _authenticate(store, payload.username, payload.password)
    return {
        "success": True,
        "token": _issue_token(user),
        "user": {"id": user["id"], "username": user["username"]},
    }

@app.post("/auth/token", response_model=Token)
async def login_for_access_token_api(form_data: Annotated[OAuth2PasswordRequestForm, Depends()], store: StoreDep):
    logger.info(f"Token request for username: {form_data.username}")
    user = _authenticate(store, form_data.username, form_data.password)
    return {"access_token": _issue_token(user), "token_type": "bearer"}

@app.get("/auth/me")
async def read_users_me_api(current_user: UserDep):
    return {"success": True, "user": current_user.model_dump()}

@app.post("/auth/change-password")
async def change_password_api(payload: ChangePasswordPayload, current_user: UserDep, store: StoreDep):
    logger.info(f"Password change requested by '{current_user.username}'.")
    user = get_user_by_username(store, current_user.username)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    if not verify_password(payload.old_password, user["password"]):
        logger.warning(f"Password change rejected for '{current_user.username}': wrong old password.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid old password")
    update_user_password(store, current_user.username, get_password_hash(payload.new_password))
    return {"success": True, "message": "Password changed successfully"}


# --- Game API Routes ---
@app.post("/game/generate")
async def api_generate_game(request_data: GenerateRequest, store: StoreDep):
    mode = request_data.mode
    logger.info(f"API Req: Generate game, Mode: {mode}")
    if not is_valid_mode(mode):
        raise HTTPException(status_code=400, detail=INVALID_MODE_DETAIL)
    try:
        game = create_game(store, mode)
    except ValueError as e:
        logger.error(f"Gen ValErr: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to generate game")
    return {"success": True, "game": {"id": game["id"], "mode": game["mode"], "puzzle": game["puzzle"]}}

@app.post("/game/check")
async def api_check_answer(payload: AnswerPayload, store: StoreDep):
    logger.info(f"API Req: Check answer, Game: {payload.game_id}")
    result = check_answer(store, payload.game_id, payload.solution)
    if result is None:
        raise HTTPException(status_code=404, detail="Game not found or expired")
    return {"success": True, **result}

@app.post("/game/hint")
async def api_get_hint(request_data: HintRequest, store: StoreDep):
    logger.info(f"API Req: Get hint, Game: {request_data.game_id}")
    result = request_hint(store, request_data.game_id, request_data.puzzle)
    outcome = result["outcome"]
    if outcome == HintOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Game not found or expired")
    if outcome == HintOutcome.ALREADY_COMPLETED:
        raise HTTPException(status_code=409, detail="Game already completed")
    if outcome == HintOutcome.INVALID_SHAPE:
        raise HTTPException(status_code=400, detail="Puzzle size does not match the game")
    if outcome == HintOutcome.NO_HINTS_LEFT:
        raise HTTPException(status_code=400, detail="No hints left for this game")
    if outcome == HintOutcome.NO_EMPTY_CELLS:
        return {"success": True, "hint": None, "hintsLeft": result["hintsLeft"], "message": "No empty cells left"}
    return {"success": True, "hint": result["hint"], "hintsLeft": result["hintsLeft"]}

SUBMIT_REJECTIONS = {
    SubmitOutcome.NOT_FOUND: (404, "Game not found or expired"),
    SubmitOutcome.ALREADY_COMPLETED: (409, "Game already completed"),
    SubmitOutcome.INVALID_SHAPE: (400, "Solution size does not match the game"),
    SubmitOutcome.INCOMPLETE: (400, "Solution is not complete"),
    SubmitOutcome.INCORRECT: (400, "Solution is not correct"),
}

@app.post("/game/submit")
async def api_submit_game(payload: SubmitPayload, current_user: UserDep, store: StoreDep):
    logger.info(f"API Req: Submit game {payload.game_id} by {current_user.username}, Time: {payload.time}")
    result = submit_game(store, payload.game_id, payload.solution, payload.time,
                         current_user.id, current_user.username)
    outcome = result["outcome"]
    if outcome in SUBMIT_REJECTIONS:
        status_code, detail = SUBMIT_REJECTIONS[outcome]
        logger.warning(f"Submission for game {payload.game_id} rejected: {outcome.value}")
        raise HTTPException(status_code=status_code, detail=detail)
    record = result["record"]
    return {
        "success": True,
        "message": "Game completed successfully",
        "record": {
            "id": record["id"],
            "mode": record["mode"],
            "time": record["time"],
            "completedAt": record["completedAt"],
        },
    }

@app.get("/game/{game_id}")
async def api_get_game(game_id: str, store: StoreDep):
    logger.info(f"API Req: Get game {game_id}")
    game = load_game(store, game_id)
    if game is None:
        raise HTTPException(status_code=404, detail="Game not found or expired")
    return {"success": True, "game": public_view(game)}


# --- Leaderboard API Routes ---
def _check_limit(limit: int, maximum: int) -> None:
    if limit <= 0 or limit > maximum:
        raise HTTPException(status_code=400, detail=f"Invalid limit. Must be between 1 and {maximum}")

@app.get("/leaderboard")
async def api_get_leaderboard(store: StoreDep, mode: str = "4x4", limit: int = 50):
    logger.info(f"API Req: Get leaderboard. Mode: {mode}, Limit: {limit}")
    if not is_valid_mode(mode):
        raise HTTPException(status_code=400, detail=INVALID_MODE_DETAIL)
    _check_limit(limit, LEADERBOARD_MAX_ENTRIES)
    entries = get_leaderboard(store, mode, limit)
    return {"success": True, "leaderboard": entries, "mode": mode, "total": len(entries)}

@app.get("/leaderboard/all")
async def api_get_all_leaderboards(store: StoreDep, limit: int = 10):
    logger.info(f"API Req: Get all leaderboards. Limit: {limit}")
    _check_limit(limit, ALL_LEADERBOARDS_MAX_LIMIT)
    return {"success": True, "leaderboards": get_all_leaderboards(store, limit)}

@app.get("/leaderboard/rank/{username}")
async def api_get_user_rank(username: str, store: StoreDep, mode: str = "4x4"):
    logger.info(f"API Req: Get rank for {username}. Mode: {mode}")
    if not is_valid_mode(mode):
        raise HTTPException(status_code=400, detail=INVALID_MODE_DETAIL)
    rank, record = get_rank(store, mode, username)
    return {"success": True, "user": username, "mode": mode, "rank": rank, "record": record}

@app.get("/leaderboard/stats")
async def api_get_leaderboard_stats(store: StoreDep):
    logger.info("API Req: Get leaderboard stats.")
    return {"success": True, "stats": get_leaderboard_stats(store)}


# --- User API Routes ---
@app.get("/user/stats")
async def api_get_user_stats(current_user: UserDep, store: StoreDep):
    logger.info(f"API Req: Get stats for {current_user.username}")
    return {"success": True, **get_user_stats(store, current_user.id)}

@app.get("/user/games")
async def api_get_user_games(current_user: UserDep, store: StoreDep, limit: int = 20, offset: int = 0):
    logger.info(f"API Req: Get games for {current_user.username}. Limit: {limit}, Offset: {offset}")
    _check_limit(limit, USER_GAMES_MAX_LIMIT)
    if offset < 0:
        raise HTTPException(status_code=400, detail="Invalid offset. Must be >= 0")
    games, total = get_user_games(store, current_user.id, limit, offset)
    return {
        "success": True,
        "games": games,
        "pagination": {"limit": limit, "offset": offset, "total": total, "hasMore": offset + limit < total},
    }

@app.get("/user/best-records")
async def api_get_best_records(current_user: UserDep, store: StoreDep):
    logger.info(f"API Req: Get best records for {current_user.username}")
    return {"success": True, "bestRecords": get_best_records(store, current_user.username)}

@app.delete("/user/games")
async def api_delete_user_games(current_user: UserDep, store: StoreDep):
    logger.info(f"API Req: Reset game records for {current_user.username}")
    reset_user_records(store, current_user.id)
    return {"success": True, "message": "User game records deleted successfully"}

@app.get("/user/profile")
async def api_get_user_profile(current_user: UserDep, store: StoreDep):
    user = get_user_by_username(store, current_user.username)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {
        "success": True,
        "user": {
            "id": user["id"],
            "username": user["username"],
            "createdAt": user["createdAt"],
            "updatedAt": user.get("updatedAt", user["createdAt"]),
        },
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    logger.info(f"Starting Sudoku Arena FastAPI server on http://127.0.0.1:{port}")
    uvicorn.run(app, host="127.0.0.1", port=port)
