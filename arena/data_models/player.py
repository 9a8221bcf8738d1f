import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class PlayerContext:
    """Identity of the player a client acts for. Passed explicitly, never global."""
    player_id: str
    player_name: str
    
    @classmethod
    def new(cls, player_name: str) -> 'PlayerContext':
        return cls(player_id=str(uuid.uuid4()), player_name=player_name.strip())
