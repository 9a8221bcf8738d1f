"""
Arena-wide constants.

Board geometry and storage encodings shared by the state machine,
the repository and the tests.
"""

class BoardConstants:
    """Constants describing the 3x3 board."""
    
    CELL_COUNT = 9
    
    # Rows, columns, diagonals
    WINNING_LINES = (
        (0, 1, 2), (3, 4, 5), (6, 7, 8),
        (0, 3, 6), (1, 4, 7), (2, 5, 8),
        (0, 4, 8), (2, 4, 6),
    )
    
    # Persisted board is a 9 character string, one character per cell
    EMPTY_CELL_CHAR = '-'
    EMPTY_BOARD = EMPTY_CELL_CHAR * CELL_COUNT

class FinishReason:
    """Why a match reached the finished state."""
    
    LINE = "line"
    DRAW = "draw"
    FORFEIT = "forfeit"

class SubscriptionSlots:
    """Named subscription slots held by one client."""
    
    CURRENT_MATCH = "current-match"
    LOBBY = "lobby"
    BRACKET = "bracket"
