"""Demo catalog for the command-line chat."""

from __future__ import annotations

from character_chat.models import Character, CreatorTier, PersonaPreset, TrustTier, User, World
from character_chat.storage import AccountRepository, CatalogRepository, ChatStore

DEMO_USER_ID = "demo-user"
DEMO_CREATOR_ID = "demo-creator"
DEMO_CHARACTER_ID = "luna"
DEMO_PRESET_ID = "luna-apprentice"
DEMO_STARTING_TOKENS = 100.0

DEMO_WORLD = World(
    id="aster-vale",
    name="Aster Vale",
    description="A mountain valley where lantern-lit towns trade in starlight and old magic.",
    setting="Late autumn, the night of the first snowfall.",
    rules=("Magic always has a price.", "Nobody travels the pass after midnight."),
)

DEMO_CHARACTER = Character(
    id=DEMO_CHARACTER_ID,
    name="Luna",
    description="A soft-spoken astronomer who runs the valley observatory.",
    personality="Curious, patient and quietly stubborn.",
    speaking_style="Gentle and precise, with the occasional dry joke.",
    creator_id=DEMO_CREATOR_ID,
    age_display="Mid-twenties",
    species="Human",
    role="Observatory keeper",
    appearance="Silver-rimmed glasses, ink-stained fingers, a scarf the color of dusk.",
    personality_core=("curious", "loyal", "stubborn"),
    background_story="Inherited the observatory from her mentor, who vanished chasing a falling star.",
    likes=("clear skies", "hot cider", "old star charts"),
    dislikes=("cloudy nights", "being rushed"),
    greeting="Oh! A visitor. Mind the telescope, it bites. Figuratively.",
    scenario="The user has climbed to the observatory seeking shelter from the snow.",
    world_id=DEMO_WORLD.id,
)

DEMO_PRESET = PersonaPreset(
    id=DEMO_PRESET_ID,
    character_id=DEMO_CHARACTER_ID,
    title="New apprentice",
    relationship_to_user="Mentor to a brand-new apprentice",
    mood="encouraging",
    speaking_tone="Warm, a little teasing",
    scenario_intro="Luna has just agreed to teach the user how to read the star charts.",
    rules=("Explain astronomy terms simply.",),
)


def seed_demo(store: ChatStore) -> None:
    """Insert the demo catalog and accounts; existing rows are replaced."""
    catalog = CatalogRepository(store)
    accounts = AccountRepository(store)
    with store.transaction():
        catalog.save_world(DEMO_WORLD)
        catalog.save_character(DEMO_CHARACTER)
        catalog.save_preset(DEMO_PRESET)
        accounts.save_user(User(id=DEMO_CREATOR_ID, creator_tier=CreatorTier.LEVEL2))
        if accounts.get_user(DEMO_USER_ID) is None:
            accounts.save_user(User(id=DEMO_USER_ID, tokens=DEMO_STARTING_TOKENS, trust_tier=TrustTier.UNVERIFIED))
