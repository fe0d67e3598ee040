"""Error taxonomy shared by the engine, runner, scorer and API layer."""


class DoppelgangerError(Exception):
    """Base class for all domain errors raised by the backend."""


class IdentityNotFound(DoppelgangerError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"Identity {user_id} not found")
        self.user_id = user_id


class InsufficientParticipants(DoppelgangerError):
    def __init__(self, resolved: int, required: int = 2) -> None:
        super().__init__(f"At least {required} participants are required (resolved {resolved})")
        self.resolved = resolved
        self.required = required


class InvalidConfiguration(DoppelgangerError):
    """Simulation configuration failed validation before any side effect."""


class InvalidScoringInput(DoppelgangerError):
    """Scoring request is missing its goal or has no pairings."""


class GenerationError(DoppelgangerError):
    """A turn or score generation call failed or returned unusable output."""

    def __init__(self, message: str, *, agent_name: str | None = None) -> None:
        super().__init__(message)
        self.agent_name = agent_name


class SimulationNotFound(DoppelgangerError):
    def __init__(self, simulation_id: int) -> None:
        super().__init__(f"Simulation {simulation_id} not found")
        self.simulation_id = simulation_id


class SimulationCancelled(DoppelgangerError):
    """Operator requested a stop; maps to the terminal `stopped` status."""
