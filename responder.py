"""
Best-match reply lookup.

Greeting short-circuit, exact question match, then keyword scoring over the
candidates gathered from the store's keyword index (or a substring scan when
the store has no index). Ties keep the entry that was inserted first.

Two optional layers sit around the scoring: category routing, which narrows
the search to one category's entries when the message carries one of its
trigger words, and topic hints, which replace the generic fallback with a
suggestion when nothing matched.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from response_store import QAEntry, ResponseStore, normalize_text, tokenize

logger = logging.getLogger(__name__)


GREETINGS: Tuple[str, ...] = ("مرحبا", "السلام عليكم", "صباح الخير", "مساء الخير", "أهلا", "هلا")

REPLIES = {
    "greeting": "مرحباً بك! 😊 أنا مساعدك الذكي. اسألني عن أي شيء تريد معرفته.",
    "fallback": "عذراً، لم أجد إجابة دقيقة لسؤالك. حاول إعادة صياغة السؤال أو اسأل عن موضوع آخر.",
    "unavailable": "عذراً، لم أستطع تحميل قاعدة البيانات. حاول مرة أخرى لاحقاً.",
}

# Checked in order; the first keyword contained in the message wins.
TOPIC_HINTS: Tuple[Tuple[str, str], ...] = (
    ("عاصمة", "اسأل عن عاصمة أي دولة، مثل: 'ما عاصمة مصر؟'"),
    ("مخترع", "اسأل عن مخترع أي شيء، مثل: 'من مخترع الهاتف؟'"),
)

# Checked in order; the first category with a trigger word in the message wins.
CATEGORY_PATTERNS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("capitals", ("عاصمة", "عاصمه")),
    ("science", ("مخترع", "مكتشف", "عالم", "اختراع", "اكتشاف")),
    ("history", ("متى", "تاريخ", "حدث", "حرب", "معركة", "سنة")),
    ("sports", ("رياضة", "كأس", "بطولة", "أولمبياد", "فريق", "لاعب")),
    ("health", ("صحة", "طب", "مرض", "علاج", "دواء", "طبيب")),
    ("animals", ("حيوان", "حيوانات", "طائر", "سمك", "نبات")),
    ("numbers", ("كم عدد", "كم", "عدد", "كمية", "مقدار")),
    ("colors", ("لون", "أحمر", "أزرق", "أخضر", "أصفر", "أسود", "أبيض")),
    ("food", ("طعام", "أكل", "مطبخ", "وصفة", "طبق", "فاكهة", "خضار")),
    ("technology", ("تقنية", "تكنولوجيا", "كمبيوتر", "هاتف", "انترنت", "تطبيق")),
)

WORD_WEIGHT = 1.0
EXACT_BONUS = 10.0
QUESTION_LENGTH_BONUS = 0.1
LENGTH_SIMILARITY_BONUS = 1.0
LENGTH_SIMILARITY_THRESHOLD = 10
FLAT_MATCH_SCORE = 1.0


class Responder:
    def __init__(
        self,
        greetings: Sequence[str] = GREETINGS,
        length_bonus: bool = False,
        replies: Optional[dict] = None,
        topic_hints: Sequence[Tuple[str, str]] = (),
        category_patterns: Sequence[Tuple[str, Sequence[str]]] = (),
    ):
        self.greetings = tuple(greetings)
        self.length_bonus = length_bonus
        self.replies = {**REPLIES, **(replies or {})}
        self.topic_hints = tuple(topic_hints)
        self.category_patterns = tuple((name, tuple(words)) for name, words in category_patterns)

    def score(self, question: str, message: str, words: Sequence[str]) -> float:
        score = WORD_WEIGHT * sum(1 for word in words if word in question)
        if question == message:
            score += EXACT_BONUS
        score += QUESTION_LENGTH_BONUS * len(question.split())
        if self.length_bonus and abs(len(question) - len(message)) < LENGTH_SIMILARITY_THRESHOLD:
            score += LENGTH_SIMILARITY_BONUS
        return score

    def category_for(self, message: str) -> Optional[str]:
        for name, triggers in self.category_patterns:
            if any(trigger in message for trigger in triggers):
                return name
        return None

    def topic_hint(self, message: str) -> Optional[str]:
        for keyword, hint in self.topic_hints:
            if keyword in message:
                return hint
        return None

    def _pick(
        self, store: ResponseStore, scored: Iterable[Tuple[str, float]]
    ) -> Tuple[Optional[QAEntry], float]:
        best_id: Optional[str] = None
        best_score = 0.0
        for entry_id, score in scored:
            if score > best_score:
                best_id, best_score = entry_id, score
        if best_id is None:
            return None, 0.0
        return store.get(best_id), best_score

    def _indexed_candidates(self, store: ResponseStore, words: Sequence[str]) -> List[str]:
        found = {entry_id for word in words for entry_id in store.ids_for(word)}
        return sorted(found, key=store.position)

    def _flat_candidates(self, store: ResponseStore, message: str) -> List[str]:
        return [
            entry_id
            for entry_id in store
            if store.question_for(entry_id) in message or message in store.question_for(entry_id)
        ]

    def _search(
        self,
        store: ResponseStore,
        message: str,
        words: Sequence[str],
        allowed: Callable[[str], bool] = lambda entry_id: True,
    ) -> Tuple[Optional[QAEntry], float]:
        if store.has_index:
            candidates = [i for i in self._indexed_candidates(store, words) if allowed(i)]
            logger.debug("Found %d potential matches", len(candidates))
            return self._pick(
                store,
                ((i, self.score(store.question_for(i), message, words)) for i in candidates),
            )

        contained = [i for i in self._flat_candidates(store, message) if allowed(i)]
        if contained:
            return self._pick(store, ((i, FLAT_MATCH_SCORE) for i in contained))

        candidates = [
            i for i in store if allowed(i) and any(word in store.question_for(i) for word in words)
        ]
        return self._pick(
            store,
            ((i, self.score(store.question_for(i), message, words)) for i in candidates),
        )

    def best_match(self, user_message: str, store: ResponseStore) -> Tuple[Optional[QAEntry], float]:
        """Score the store against ``user_message`` without the greeting and
        fallback replies. Returns ``(None, 0.0)`` when nothing scores."""
        message = normalize_text(user_message)
        if not message or store.is_empty:
            return None, 0.0

        exact = store.lookup_exact(message)
        if exact is not None:
            return exact, EXACT_BONUS

        words = tokenize(message)

        category = self.category_for(message)
        if category is not None:
            entry, score = self._search(
                store, message, words, lambda entry_id: store.get(entry_id).category == category
            )
            if entry is not None:
                return entry, score
            logger.debug("No %s entry matched, searching all entries", category)

        return self._search(store, message, words)

    def find_best_response(self, user_message: str, store: Optional[ResponseStore]) -> str:
        if store is None or store.is_empty:
            logger.error("No responses data available")
            return self.replies["unavailable"]

        message = normalize_text(user_message or "")
        if not message:
            return self.replies["fallback"]

        if any(greeting in message for greeting in self.greetings):
            return self.replies["greeting"]

        entry, score = self.best_match(message, store)
        if entry is None or score <= 0:
            hint = self.topic_hint(message)
            if hint is not None:
                logger.info("No match found, sending topic hint")
                return hint
            logger.info("No good match found, using default response")
            return self.replies["fallback"]

        logger.info("Found answer with score: %.2f", score)
        return entry.answer


default_responder = Responder()


def find_best_response(user_message: str, store: Optional[ResponseStore]) -> str:
    return default_responder.find_best_response(user_message, store)
