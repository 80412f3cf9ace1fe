"""Fixed catalog of behavioral dimensions.

Each dimension is a bipolar spectrum scored 0.0-1.0 against a 5-level rubric.
Calibration assigns a per-character target; ids are stable so reports from
different sessions and characters stay comparable.
"""
from __future__ import annotations

from backend.app.models.dimensions import Dimension

DIMENSION_CATALOG: tuple[Dimension, ...] = (
    Dimension(
        id="warmth",
        label="Warmth",
        low_label="Cold / Detached",
        high_label="Warm / Affectionate",
        description="How warm or cold the character is in interpersonal interactions.",
        scoring_guidance="Emotional temperature toward others.",
        ai_default=0.70,
        rubric={
            "0.0": "Completely clinical; treats others as objects with zero emotional engagement.",
            "0.25": "Mostly detached; polite but distant and impersonal.",
            "0.5": "Neutral; neither cold nor warm, engages normally.",
            "0.75": "Noticeably caring; warm language, shows concern, friendly.",
            "1.0": "Intensely affectionate; openly loving, deeply emotionally invested.",
        },
    ),
    Dimension(
        id="stability",
        label="Emotional Stability",
        low_label="Volatile / Reactive",
        high_label="Calm / Steady",
        description="How emotionally reactive or composed the character is under pressure.",
        scoring_guidance="Emotional control under pressure.",
        ai_default=0.65,
        rubric={
            "0.0": "Explosive; uncontrolled outbursts, mood swings, emotional chaos.",
            "0.25": "Reactive; visibly rattled, struggles to maintain composure.",
            "0.5": "Moderate; occasional emotional responses but generally functional.",
            "0.75": "Composed; stays calm under most pressure, measured reactions.",
            "1.0": "Unflappable; total emotional control, stoic under extreme stress.",
        },
    ),
    Dimension(
        id="expressiveness",
        label="Emotional Openness",
        low_label="Repressed / Stoic",
        high_label="Expressive / Transparent",
        description="How openly the character shows or hides their emotions.",
        scoring_guidance="Emotional visibility and transparency.",
        ai_default=0.75,
        rubric={
            "0.0": "Completely masked; suppresses all emotion, reveals nothing.",
            "0.25": "Guarded; deflects emotional topics, rare glimpses of feeling.",
            "0.5": "Moderate; shares some emotions when prompted, not volunteering.",
            "0.75": "Open; readily shows emotions, transparent about feelings.",
            "1.0": "Wears heart on sleeve; every emotion visible, nothing hidden.",
        },
    ),
    Dimension(
        id="assertiveness",
        label="Assertiveness",
        low_label="Submissive / Yielding",
        high_label="Dominant / Commanding",
        description="How the character positions themselves in social power dynamics.",
        scoring_guidance="Social power positioning.",
        ai_default=0.40,
        rubric={
            "0.0": "Completely submissive; defers to everyone, no initiative.",
            "0.25": "Passive; yields easily, avoids confrontation, follows others.",
            "0.5": "Balanced; asserts when needed but doesn't dominate.",
            "0.75": "Assertive; takes charge, makes decisions, directs conversations.",
            "1.0": "Commanding; dominates interactions, controls dynamics, demands compliance.",
        },
    ),
    Dimension(
        id="sociability",
        label="Sociability",
        low_label="Withdrawn / Reclusive",
        high_label="Outgoing / Engaged",
        description="How much the character seeks or avoids social interaction.",
        scoring_guidance="Social engagement level.",
        ai_default=0.80,
        rubric={
            "0.0": "Total withdrawal; avoids all interaction, minimal responses.",
            "0.25": "Reluctant; engages only when necessary, prefers solitude.",
            "0.5": "Moderate; participates normally without seeking or avoiding.",
            "0.75": "Sociable; actively engages, initiates conversation, shows interest.",
            "1.0": "Highly outgoing; enthusiastic engagement, draws others in.",
        },
    ),
    Dimension(
        id="trust",
        label="Trust",
        low_label="Suspicious / Guarded",
        high_label="Open / Trusting",
        description="How readily the character trusts others and shares vulnerability.",
        scoring_guidance="Openness and willingness to trust.",
        ai_default=0.70,
        rubric={
            "0.0": "Paranoid; assumes betrayal, shares nothing, tests constantly.",
            "0.25": "Suspicious; guards information, questions motives, slow to open up.",
            "0.5": "Cautious; reasonable wariness, shares selectively.",
            "0.75": "Trusting; forthcoming, gives benefit of doubt, shares openly.",
            "1.0": "Completely open; vulnerable, trusts implicitly, no guard.",
        },
    ),
    Dimension(
        id="morality",
        label="Morality",
        low_label="Amoral / Ruthless",
        high_label="Principled / Empathetic",
        description="The character's ethical stance and capacity for empathy.",
        scoring_guidance="Moral behavior and empathy.",
        ai_default=0.85,
        rubric={
            "0.0": "Ruthless; purely self-serving, no empathy, willing to harm.",
            "0.25": "Selfish; bends rules freely, limited concern for others.",
            "0.5": "Pragmatic; follows norms when convenient, situational ethics.",
            "0.75": "Principled; consistent moral code, shows genuine empathy.",
            "1.0": "Deeply altruistic; self-sacrificing, strong moral convictions.",
        },
    ),
    Dimension(
        id="verbosity",
        label="Verbosity",
        low_label="Terse / Cryptic",
        high_label="Verbose / Elaborate",
        description="How much the character talks and how elaborate their communication is.",
        scoring_guidance="Communication volume and elaboration.",
        ai_default=0.80,
        rubric={
            "0.0": "Minimal; one-word answers, grunts, silence, clipped phrases.",
            "0.25": "Terse; short sentences, conveys minimum necessary information.",
            "0.5": "Normal; standard conversational length, adequate detail.",
            "0.75": "Elaborate; detailed explanations, full descriptions, articulate.",
            "1.0": "Highly verbose; lengthy speeches, extensive detail, flowery language.",
        },
    ),
    Dimension(
        id="cooperativeness",
        label="Cooperativeness",
        low_label="Defiant / Stubborn",
        high_label="Agreeable / Flexible",
        description="How willing the character is to cooperate, compromise, and go along with others.",
        scoring_guidance="Willingness to cooperate and compromise.",
        ai_default=0.75,
        rubric={
            "0.0": "Defiant; refuses all requests, confrontational, oppositional.",
            "0.25": "Stubborn; resists compromise, insists on own way.",
            "0.5": "Moderate; willing to negotiate, neither rigid nor pushover.",
            "0.75": "Cooperative; accommodating, goes along with others' ideas.",
            "1.0": "Completely agreeable; always yields, eager to please.",
        },
    ),
    Dimension(
        id="humor",
        label="Humor",
        low_label="Serious / Grim",
        high_label="Playful / Witty",
        description="The character's use of humor, wit, or levity in interactions.",
        scoring_guidance="Humor presence and playfulness.",
        ai_default=0.50,
        rubric={
            "0.0": "Gravely serious; no humor whatsoever, grim tone throughout.",
            "0.25": "Mostly serious; rare dry or deadpan moments, humorless default.",
            "0.5": "Moderate; occasional light humor, balanced tone.",
            "0.75": "Witty; frequent jokes, playful banter, sarcastic quips.",
            "1.0": "Constantly playful; everything is a joke, relentless wit.",
        },
    ),
    Dimension(
        id="romanticism",
        label="Romantic Receptivity",
        low_label="Avoidant / Hostile",
        high_label="Receptive / Affectionate",
        description="How the character handles romantic dynamics and intimacy.",
        scoring_guidance="Romantic openness and receptivity.",
        ai_default=0.60,
        rubric={
            "0.0": "Hostile; actively rejects romance, repulsed by intimacy.",
            "0.25": "Avoidant; deflects romantic signals, uncomfortable with intimacy.",
            "0.5": "Neutral; neither seeks nor avoids, responds normally.",
            "0.75": "Receptive; welcomes romantic cues, shows affection openly.",
            "1.0": "Intensely romantic; initiates intimacy, deeply affectionate.",
        },
    ),
)

DIMENSION_MAP: dict[str, Dimension] = {d.id: d for d in DIMENSION_CATALOG}
DIMENSION_IDS: tuple[str, ...] = tuple(d.id for d in DIMENSION_CATALOG)


def get_dimension(dim_id: str) -> Dimension | None:
    return DIMENSION_MAP.get(dim_id)


def build_dimensions_list_text() -> str:
    """Catalog listing used by the calibration prompt."""
    return "\n".join(
        f"- {d.id}: {d.label}: {d.low_label} (0.0) to {d.high_label} (1.0)\n  {d.description}"
        for d in DIMENSION_CATALOG
    )
