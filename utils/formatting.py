"""
Formatting utilities for Loop Overdub.
"""

from typing import Optional


def format_time(seconds: float, include_ms: bool = True) -> str:
    """
    Format a loop position as a time string.

    Args:
        seconds: Time in seconds
        include_ms: Whether to include hundredths

    Returns:
        Formatted string like "0:03.50" or "0:03"
    """
    seconds = max(0.0, seconds)
    minutes = int(seconds // 60)
    secs = seconds % 60

    if include_ms:
        return f"{minutes}:{secs:05.2f}"
    return f"{minutes}:{int(secs):02d}"


def parse_time(text: str) -> Optional[float]:
    """
    Parse a position typed on the command line.

    Accepts "M:SS.ms", "M:SS" or plain seconds ("3.5").

    Returns:
        Time in seconds, or None if parsing failed
    """
    text = text.strip()
    try:
        if ':' in text:
            minutes, secs = text.split(':')
            return int(minutes) * 60 + float(secs)
        return float(text)
    except ValueError:
        return None


def format_segments(segments) -> str:
    """Render a segment list as "[3.50-4.00] [0.00-...]" for log lines."""
    parts = []
    for seg in segments:
        end = "..." if seg.end is None else f"{seg.end:.2f}"
        parts.append(f"[{seg.start:.2f}-{end}]")
    return " ".join(parts) if parts else "(none)"
