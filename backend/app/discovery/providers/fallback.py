from __future__ import annotations

CUISINE_LINES = {
    "indian": "I found several great Indian restaurants in your area. Here are the most popular ones.",
    "chinese": "Here are some excellent Chinese restaurants nearby with great reviews.",
    "italian": "Here are some well-loved Italian spots to choose from.",
    "thai": "These Thai restaurants are worth a look.",
    "japanese": "Here are some Japanese restaurants you might enjoy.",
}
SERVICE_LINES = {
    "salon": "Here are some salons taking bookings right now.",
    "hair": "Here are some hair specialists taking bookings right now.",
    "spa": "Here are some places to unwind.",
}
GENERIC_LINE = "I found some great options for you. Take a look at these recommendations."
NO_MATCH_LINE = "I couldn't find an exact match, but the suggestions below should help you narrow it down."
NO_MATCH_MARKER = "no business matched"


class FallbackGenerator:
    """Deterministic, network-free stand-in used when no provider can answer."""

    name = "fallback"

    def generate(self, prompt: str) -> str:
        lowered = (prompt or "").lower()
        if NO_MATCH_MARKER in lowered:
            return NO_MATCH_LINE
        for keyword, line in CUISINE_LINES.items():
            if keyword in lowered:
                return line
        for keyword, line in SERVICE_LINES.items():
            if keyword in lowered:
                return line
        return GENERIC_LINE
