import random
import math
import os
import logging
from typing import Dict, Any, Optional, List, Tuple

# --- Initialize Logger ---
logger = logging.getLogger(__name__)
if not logger.hasHandlers():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(module)s:%(lineno)d] - %(message)s')

Grid = List[List[int]]

# --- Constants ---
SUPPORTED_MODES = ["4x4", "5x5", "6x6"]
DEFAULT_DIFFICULTY = 0.5
MODE_DIFFICULTIES: Dict[str, float] = {
    "4x4": float(os.getenv("DIFFICULTY_4X4", "0.4")),
    "5x5": float(os.getenv("DIFFICULTY_5X5", "0.5")),
    "6x6": float(os.getenv("DIFFICULTY_6X6", "0.6")),
}
MAX_HINTS = int(os.getenv("MAX_HINTS", "3"))


# --- Mode helpers ---
def is_valid_mode(mode: Optional[str]) -> bool:
    return mode in SUPPORTED_MODES

def get_size_from_mode(mode: str) -> int:
    return int(mode.split("x")[0])

def get_difficulty_for_mode(mode: str) -> float:
    return MODE_DIFFICULTIES.get(mode, DEFAULT_DIFFICULTY)


# --- Grid helpers ---
def empty_grid(size: int) -> Grid:
    return [[0] * size for _ in range(size)]

def deep_copy(grid: Grid) -> Grid:
    return [list(row) for row in grid]

def shuffled(items: List[Any]) -> List[Any]:
    """Return a uniformly shuffled copy of ``items``; the input is left untouched."""
    result = list(items)
    random.shuffle(result)  # Fisher-Yates
    return result

def get_box_shape(size: int) -> Tuple[int, int]:
    """Sub-box (rows, cols) for a grid side.

    Perfect squares give sqrt(size) x sqrt(size) boxes (4 -> 2x2). Other sides use the
    most square factorisation with rows <= cols (6 -> 2x3). A prime side ends up with
    1 x size, which is the row itself, so the box rule adds nothing there.
    """
    box_rows = math.isqrt(size)
    while size % box_rows != 0:
        box_rows -= 1
    return box_rows, size // box_rows


# --- Grid Validator ---
def is_legal_placement(grid: Grid, row: int, col: int, value: int) -> bool:
    size = len(grid)
    if any(grid[row][x] == value for x in range(size)):
        return False
    if any(grid[x][col] == value for x in range(size)):
        return False
    box_rows, box_cols = get_box_shape(size)
    start_row = row - row % box_rows
    start_col = col - col % box_cols
    for i in range(start_row, start_row + box_rows):
        for j in range(start_col, start_col + box_cols):
            if grid[i][j] == value:
                return False
    return True

def is_valid_grid(grid: Grid) -> bool:
    """True when no filled cell contradicts another one.

    Each filled cell is cleared before the placement check, otherwise the cell would
    always collide with itself. The value is put back before moving on, on the
    failure path as well, so callers never see the grid change.
    """
    size = len(grid)
    for row in range(size):
        for col in range(size):
            value = grid[row][col]
            if value == 0:
                continue
            grid[row][col] = 0
            try:
                legal = is_legal_placement(grid, row, col, value)
            finally:
                grid[row][col] = value
            if not legal:
                return False
    return True

def is_complete_grid(grid: Grid) -> bool:
    if any(value == 0 for row in grid for value in row):
        return False
    return is_valid_grid(grid)

def grids_equal(first: Grid, second: Grid) -> bool:
    return [list(row) for row in first] == [list(row) for row in second]


# --- Grid Solver ---
def _fill(grid: Grid) -> bool:
    size = len(grid)
    for row in range(size):
        for col in range(size):
            if grid[row][col] != 0:
                continue
            for value in shuffled(list(range(1, size + 1))):
                if is_legal_placement(grid, row, col, value):
                    grid[row][col] = value
                    if _fill(grid):
                        return True
                    grid[row][col] = 0
            return False
    return True

def generate_solution(size: int) -> Grid:
    grid = empty_grid(size)
    if not _fill(grid):
        # Every supported size has a solution, so this only fires on a broken box rule.
        logger.critical(f"Backtracking could not fill a {size}x{size} grid.")
        raise ValueError(f"No solution exists for grid size {size}.")
    logger.debug(f"Generated {size}x{size} solution: {grid}")
    return grid


# --- Puzzle Carver ---
def carve_puzzle(solution: Grid, difficulty: float = DEFAULT_DIFFICULTY) -> Grid:
    puzzle = deep_copy(solution)
    size = len(puzzle)
    cells_to_remove = math.floor(size * size * difficulty)
    cells = [(row, col) for row in range(size) for col in range(size)]
    for row, col in shuffled(cells)[:cells_to_remove]:
        puzzle[row][col] = 0
    logger.debug(f"Carved {cells_to_remove} of {size * size} cells (difficulty {difficulty}).")
    return puzzle


# --- Hints ---
def pick_hint(puzzle: Grid, solution: Grid) -> Optional[Dict[str, int]]:
    empty_cells = [
        {"row": row, "col": col, "value": solution[row][col]}
        for row in range(len(puzzle))
        for col in range(len(puzzle[row]))
        if puzzle[row][col] == 0
    ]
    if not empty_cells:
        return None
    return random.choice(empty_cells)


if __name__ == "__main__":
    logger.info("Testing sudoku_logic.py standalone functions...")
    for mode_to_test in SUPPORTED_MODES:
        board_size = get_size_from_mode(mode_to_test)
        solved = generate_solution(board_size)
        carved = carve_puzzle(solved, get_difficulty_for_mode(mode_to_test))
        logger.info(f"{mode_to_test}: complete={is_complete_grid(solved)} puzzle={carved}")
