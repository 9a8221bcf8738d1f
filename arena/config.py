import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Arena configuration settings"""
    
    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///arena.db')
    
    # Runtime settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    
    # Rating settings
    STARTING_ELO = int(os.getenv('STARTING_ELO', 1000))
    K_FACTOR = int(os.getenv('K_FACTOR', 32))
    MIN_ELO = int(os.getenv('MIN_ELO', 100))
    
    # Lobby settings
    LOBBY_LIMIT = int(os.getenv('LOBBY_LIMIT', 10))
    LEADERBOARD_LIMIT = int(os.getenv('LEADERBOARD_LIMIT', 50))
    REPLAY_LIMIT = int(os.getenv('REPLAY_LIMIT', 20))
    
    # Abandoned match policy
    WAITING_MATCH_TTL_MINUTES = int(os.getenv('WAITING_MATCH_TTL_MINUTES', 30))
    PLAYING_MATCH_TTL_MINUTES = int(os.getenv('PLAYING_MATCH_TTL_MINUTES', 10))
    HOUSEKEEPING_INTERVAL_SECONDS = int(os.getenv('HOUSEKEEPING_INTERVAL_SECONDS', 60))
    
    # Tournament settings
    TOURNAMENT_SIZES = (4, 8)
    TOURNAMENT_WINNER_BONUS = int(os.getenv('TOURNAMENT_WINNER_BONUS', 50))
    TOURNAMENT_RUNNER_UP_BONUS = int(os.getenv('TOURNAMENT_RUNNER_UP_BONUS', 25))
    TOURNAMENT_PARTICIPANT_BONUS = int(os.getenv('TOURNAMENT_PARTICIPANT_BONUS', 10))
    
    @classmethod
    def get_async_database_url(cls, database_url: str = None) -> str:
        """Get the database URL with an async driver"""
        url = database_url or cls.DATABASE_URL
        if url.startswith('sqlite:///'):
            url = url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        return url
    
    @classmethod
    def validate(cls):
        """Validate that configuration values are consistent"""
        if cls.K_FACTOR <= 0:
            raise ValueError("K_FACTOR must be positive")
        if cls.MIN_ELO > cls.STARTING_ELO:
            raise ValueError("MIN_ELO cannot be above STARTING_ELO")
        if cls.LOBBY_LIMIT <= 0 or cls.LEADERBOARD_LIMIT <= 0 or cls.REPLAY_LIMIT <= 0:
            raise ValueError("LOBBY_LIMIT, LEADERBOARD_LIMIT and REPLAY_LIMIT must be positive")
        for size in cls.TOURNAMENT_SIZES:
            if size < 2 or size & (size - 1):
                raise ValueError("TOURNAMENT_SIZES must be powers of two")
