# tip_escrow/demo/seed_demo_data.py

from datetime import datetime, timezone
from fractions import Fraction

from tip_escrow.sdk.escrow_service import EscrowService
from tip_escrow.storage.models import TipEvent, UnverifiedArtist, VerifiedArtist

service = EscrowService()

service.register_media(
    "track-1",
    artist_name="Alice & Bob",
    owners=[
        (VerifiedArtist(artist_id="alice"), Fraction(3, 5)),
        (VerifiedArtist(artist_id="bob"), Fraction(2, 5)),
    ],
    title="Shared Single",
)
service.register_media(
    "track-2",
    artist_name="The Unsigned",
    owners=[(UnverifiedArtist.from_name("The Unsigned"), 1)],
    title="Demo Tape",
)
service.register_media(
    "track-3",
    artist_name="The Unsigned",
    owners=[],
    title="Live Session",
    featured_artists=["Guest Singer"],
)

tips = [
    TipEvent(
        tip_id="demo-tip-1",
        media_id="track-1",
        bidder_id="fan-1",
        amount=1000,
        timestamp=datetime.now(timezone.utc),
    ),
    TipEvent(
        tip_id="demo-tip-2",
        media_id="track-2",
        bidder_id="fan-2",
        amount=5000,  # held unclaimed
        timestamp=datetime.now(timezone.utc),
    ),
    TipEvent(
        tip_id="demo-tip-3",
        media_id="track-3",
        bidder_id="fan-3",
        amount=2000,  # claimable by either credited name
        timestamp=datetime.now(timezone.utc),
    ),
]

for tip in tips:
    service.allocate(tip)

print("Demo tips allocated")
