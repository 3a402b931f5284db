"""
Flavor notes ranked by how much conversation their reviews attract.

Every in-window review mentioning a note scores 1 + 2 per like + 3 per reply
for that note. Notes are ranked on the average score per review, and a note
mentioned by fewer than two distinct authors is never reported.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Set

from .activity import author_scope, load_dataset
from .dataset import CatalogDataset
from .filters import ProductPredicate, UserPredicate
from .models import NoteInteraction, NotesTopResult, TimeWindow
from .repository import AnalyticsRepository

logger = logging.getLogger(__name__)

MENTION_WEIGHT = 1
LIKE_WEIGHT = 2
REPLY_WEIGHT = 3
MIN_NOTE_USERS = 2
TOP_NOTES = 5

NOTE_LABELS: Dict[str, str] = {
    "amargo_muy_bajo": "Muy poco amargo",
    "amargo_bajo": "Poco amargo",
    "amargo_medio": "Amargo moderado",
    "amargo_alto": "Muy amargo",
    "amargo_muy_alto": "Extremadamente amargo",
    "herbal_fresco": "Herbal fresco",
    "herbal_seco": "Herbal seco",
    "herbal_complejo": "Herbal complejo",
    "herbal_suave": "Herbal suave",
    "herbal_intenso": "Herbal intenso",
    "cremoso": "Cremoso",
    "suave": "Suave",
    "aspero": "Áspero",
    "polvoroso": "Polvoroso",
    "sedoso": "Sedoso",
    "denso": "Denso",
    "aroma_intenso": "Aroma intenso",
    "aroma_suave": "Aroma suave",
    "aroma_fresco": "Aroma fresco",
    "aroma_tostado": "Aroma tostado",
    "aroma_herbal": "Aroma herbal",
    "cuerpo_liviano": "Cuerpo liviano",
    "cuerpo_medio": "Cuerpo medio",
    "cuerpo_robusto": "Cuerpo robusto",
    "cuerpo_intenso": "Cuerpo intenso",
    "cuerpo_completo": "Cuerpo completo",
    "dulce_natural": "Dulce natural",
    "terroso": "Terroso",
    "citrico": "Cítrico",
    "frutal": "Frutal",
    "floral": "Floral",
    "mineral": "Mineral",
    "ahumado": "Ahumado",
    "maderoso": "Maderoso",
    "equilibrado": "Equilibrado",
    "astringente": "Astringente",
    "refrescante": "Refrescante",
    "energizante": "Energizante",
    "reconfortante": "Reconfortante",
    "estimulante": "Estimulante",
    "con_palo_notable": "Con palo notable",
    "sin_palo_limpio": "Sin palo, limpio",
    "barbacua_presente": "Barbacuá presente",
    "secado_natural": "Secado natural",
    "estacionamiento_largo": "Estacionamiento largo",
    "molienda_fina": "Molienda fina",
    "molienda_gruesa": "Molienda gruesa",
}


def note_label(note: str) -> str:
    return NOTE_LABELS.get(note, note)


@dataclass
class _NoteTally:
    score: int = 0
    reviews: int = 0
    likes: int = 0
    replies: int = 0
    users: Set[str] = field(default_factory=set)


class FlavorNotesRanker:
    def __init__(self, repository: AnalyticsRepository, limit: int = TOP_NOTES) -> None:
        self.repository = repository
        self.limit = limit

    async def compute(
        self,
        user_predicate: UserPredicate,
        product_predicate: ProductPredicate,
        window: TimeWindow,
    ) -> NotesTopResult:
        dataset = await load_dataset(self.repository, user_predicate, product_predicate)
        return self.calculate(dataset, user_predicate, window, self.limit)

    @staticmethod
    def calculate(
        dataset: CatalogDataset,
        user_predicate: UserPredicate,
        window: TimeWindow,
        limit: int = TOP_NOTES,
    ) -> NotesTopResult:
        authors = author_scope(dataset, user_predicate)
        tallies: Dict[str, _NoteTally] = defaultdict(_NoteTally)
        total_reviews = 0
        reviewers: Set[str] = set()

        for _, review in dataset.iter_reviews(window.start, window.end, authors):
            if not review.notes:
                continue
            total_reviews += 1
            reviewers.add(review.author_id)
            # Replies count regardless of when they were posted.
            score = MENTION_WEIGHT + LIKE_WEIGHT * len(review.likes) + REPLY_WEIGHT * len(review.replies)
            for note in review.notes:
                tally = tallies[note]
                tally.score += score
                tally.reviews += 1
                tally.likes += len(review.likes)
                tally.replies += len(review.replies)
                tally.users.add(review.author_id)

        ranked = sorted(
            (
                (note, tally)
                for note, tally in tallies.items()
                if len(tally.users) >= MIN_NOTE_USERS
            ),
            key=lambda item: (-item[1].score / item[1].reviews, item[0]),
        )[:limit]

        notes: List[NoteInteraction] = []
        top_score = round(ranked[0][1].score / ranked[0][1].reviews, 2) if ranked else 0.0
        for note, tally in ranked:
            normalized = round(tally.score / tally.reviews, 2)
            notes.append(
                NoteInteraction(
                    note=note,
                    label=note_label(note),
                    share=normalized / top_score if top_score > 0 else 0.0,
                    interaction_score=tally.score,
                    normalized_score=normalized,
                    review_count=tally.reviews,
                    user_count=len(tally.users),
                    avg_likes=round(tally.likes / tally.reviews, 1),
                    avg_replies=round(tally.replies / tally.reviews, 1),
                )
            )

        logger.debug(
            "Ranked %d of %d notes from %d reviews (%d suppressed below %d users)",
            len(notes),
            len(tallies),
            total_reviews,
            sum(1 for tally in tallies.values() if len(tally.users) < MIN_NOTE_USERS),
            MIN_NOTE_USERS,
        )
        return NotesTopResult(
            window=window,
            notes=notes,
            total_reviews=total_reviews,
            unique_users=len(reviewers),
            min_users=MIN_NOTE_USERS,
        )
