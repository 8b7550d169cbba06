"""Caller-visible failures of the game core.

Losing a puzzle is not an error: a guess against a finished puzzle returns the
unchanged state. These exceptions cover sequencing bugs upstream (submitting
before starting, archiving a half-configured puzzle) so the HTTP layer can
tell "you lost" apart from "something went wrong".
"""


class GameError(Exception):
    code = 'game_error'
    status_code = 400

    def __init__(self, detail: str = ''):
        self.detail = detail or (self.__doc__ or self.code).strip()
        super().__init__(self.detail)


class SessionNotFoundError(GameError):
    """Player has no game session"""
    code = 'session_not_found'
    status_code = 404


class NotStartedError(GameError):
    """Game not started"""
    code = 'not_started'


class PuzzleUnavailableError(GameError):
    """No puzzle available"""
    code = 'puzzle_unavailable'
    status_code = 404


class InvalidGuessError(GameError):
    """Guess does not match the board"""
    code = 'invalid_guess'


class IncompletePuzzleError(GameError):
    """Cannot archive: current puzzle is incomplete"""
    code = 'incomplete_puzzle'
