from dataclasses import dataclass

@dataclass
class Rules:
    """Configuration for detecting finishing sessions and estimating ETAs."""

    # Readings below this power count as trickle charging (watts)
    low_power_watts: float = 5.0
    # Trailing window that must be entirely low power (minutes)
    stability_window_min: float = 10.0
    # Window right before the trailing one used to spot rebounds (minutes)
    buffer_window_min: float = 5.0
    # Minimum readings in the whole session before judging completion
    min_total_readings: int = 20
    # Minimum readings inside the trailing window
    min_window_readings: int = 5
    # Minimum readings inside the buffer window to check the trend
    min_buffer_readings: int = 3
    # Trailing average above buffer average by this factor means rising power
    rebound_ratio: float = 1.2
    # Confidence reported once a session is finishing
    finished_confidence: float = 0.95
    # Upper bound on any duration estimate confidence
    max_confidence: float = 0.95
