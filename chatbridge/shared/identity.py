"""Agent display identity.

Outgoing messages are prefixed with the agent's name so several agents
can share one chat. Without a configured name, a random superhero name
is picked; host and folder are kept alongside for the startup
announcement.
"""
from __future__ import annotations

import random
import socket
from dataclasses import dataclass
from pathlib import Path

SUPERHERO_NAMES = (
    "Batman", "Superman", "Wonder Woman", "Flash", "Aquaman",
    "Green Lantern", "Cyborg", "Spider-Man", "Iron Man", "Thor",
    "Hulk", "Black Widow", "Hawkeye", "Storm", "Wolverine",
    "Jean Grey", "Cyclops", "Rogue", "Gambit", "Black Panther",
    "Doctor Strange", "Scarlet Witch", "Vision", "Falcon", "Ant-Man",
    "Wasp", "Daredevil", "Jessica Jones", "Luke Cage", "Iron Fist",
    "Nightwing", "Robin", "Batgirl", "Supergirl", "Zatanna",
)


@dataclass(frozen=True)
class AgentIdentity:
    name: str
    host: str
    folder: str

    @property
    def label(self) -> str:
        """``Name (host:folder)`` for announcements and /status."""
        return f"{self.name} ({self.host}:{self.folder})"


def normalize_agent_name(name: str | None) -> str | None:
    """Collapse whitespace; blank names become None."""
    if name is None:
        return None
    collapsed = " ".join(name.split())
    return collapsed or None


def random_agent_name(rng: random.Random | None = None) -> str:
    return (rng or random).choice(SUPERHERO_NAMES)


def generate_agent_identity(
    directory: str | Path,
    custom_name: str | None = None,
    rng: random.Random | None = None,
) -> AgentIdentity:
    name = normalize_agent_name(custom_name) or random_agent_name(rng)
    return AgentIdentity(
        name=name,
        host=socket.gethostname().split(".", 1)[0],
        folder=Path(directory).name or str(directory),
    )
