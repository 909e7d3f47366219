# nurture/templates.py
from typing import Dict, Optional

from nurture.config import settings
from nurture.errors import ValidationError
from nurture.models import Lead
from nurture.schema import NurtureStage

# -------------------------------
# Stage Templates
# -------------------------------
STAGE_TEMPLATES: Dict[NurtureStage, str] = {
    NurtureStage.DAY_1: (
        "Hi {name}, it's {agent} from Listing Scout. You requested info about selling your home. "
        "Are you still thinking about a move this year? (Y/N)"
    ),
    NurtureStage.DAY_2: (
        "Hi {name}, {agent} again. Happy to run a free price check on your home, no strings. Want me to send it over?"
    ),
    NurtureStage.DAY_3: (
        "Hi {name}. Two things usually drive a sale: timing or price. Which is more important for you right now?"
    ),
    NurtureStage.DAY_5: (
        "Hi {name}, homes near you have been moving quickly this month. Would a quick call this week help you plan?"
    ),
    NurtureStage.DAY_7: (
        "Quick question: are you curious what your neighbor's home just sold for? "
        "That recent sale price will affect your game plan."
    ),
    NurtureStage.LONG_TERM: (
        "Hi {name}. I noticed a few homes sold in your area recently. "
        "Are you tracking local prices or should I send you a quick summary?"
    ),
}


# -------------------------------
# Public API
# -------------------------------
def render_stage(stage: Optional[NurtureStage], lead: Lead, agent: Optional[str] = None) -> str:
    """
    Render the message body for a lead's current nurture stage.

    Raises ValidationError when the stage has no template; the sweep treats
    that as a per-lead skip.
    """
    template = STAGE_TEMPLATES.get(stage) if stage is not None else None
    if template is None:
        raise ValidationError(f"No template for stage {lead.raw_stage or stage!r}")
    return template.format(name=lead.first_name(), agent=agent or settings().AGENT_NAME)


__all__ = ["STAGE_TEMPLATES", "render_stage"]
