"""
Negotiation session archive.

WHAT: Persist negotiation sessions once they reach a terminal outcome
WHY: Live sessions are dropped from seller memory; history must remain inspectable
HOW: One SessionRow per archived session with history as JSON
"""

from sqlalchemy import select

from .database import Database
from .models import SessionRow
from ..models.negotiation import NegotiationSession, Offer, SessionOutcome
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SessionArchive:
    """Archive of terminal negotiation sessions."""

    def __init__(self, db: Database):
        self.db = db

    def archive(self, session: NegotiationSession) -> None:
        if session.outcome == SessionOutcome.OPEN:
            raise ValueError(f"Session {session.session_id} is still open")
        with self.db.session() as s:
            s.add(SessionRow(
                session_id=session.session_id,
                listing_id=session.listing_id,
                buyer_id=session.buyer_id,
                seller_id=session.seller_id,
                outcome=session.outcome,
                agreed_price=session.agreed_price,
                round_count=session.round_count,
                max_rounds=session.max_rounds,
                history=[offer.model_dump(mode="json") for offer in session.history],
                opened_at=session.opened_at,
                closed_at=session.closed_at,
            ))
        logger.info(f"Session {session.session_id} archived ({session.outcome.value}, {session.round_count} rounds)")

    def list_for_listing(self, listing_id: str) -> list[NegotiationSession]:
        with self.db.session() as s:
            rows = s.scalars(
                select(SessionRow)
                .where(SessionRow.listing_id == listing_id)
                .order_by(SessionRow.id)
            ).all()
            return [self._to_model(row) for row in rows]

    def get(self, session_id: str) -> NegotiationSession | None:
        """Latest archived session with this id."""
        with self.db.session() as s:
            row = s.scalars(
                select(SessionRow)
                .where(SessionRow.session_id == session_id)
                .order_by(SessionRow.id.desc())
            ).first()
            return self._to_model(row) if row else None

    def latest_agreement(self, session_id: str) -> NegotiationSession | None:
        """Most recent session with this id that closed with an agreed price."""
        with self.db.session() as s:
            row = s.scalars(
                select(SessionRow)
                .where(SessionRow.session_id == session_id)
                .where(SessionRow.outcome == SessionOutcome.AGREED)
                .order_by(SessionRow.id.desc())
            ).first()
            return self._to_model(row) if row else None

    @staticmethod
    def _to_model(row: SessionRow) -> NegotiationSession:
        return NegotiationSession(
            session_id=row.session_id,
            listing_id=row.listing_id,
            buyer_id=row.buyer_id,
            seller_id=row.seller_id,
            history=[Offer.model_validate(item) for item in row.history or []],
            round_count=row.round_count,
            max_rounds=row.max_rounds,
            outcome=row.outcome,
            agreed_price=row.agreed_price,
            opened_at=row.opened_at,
            closed_at=row.closed_at,
        )
