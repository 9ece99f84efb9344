"""
Feed quality analysis.

Scores each fetched item for topical relevance (0-1), collapses
near-duplicate headlines and drops items below the relevance floor,
recording why each rejected item was dropped.  Downstream detection and
prioritization only ever see the accepted subset.

Relevance blends four factors (weights 40/30/20/10):

- keyword match: domain keywords found, saturating at three
- contextual fit: vocabulary of the source's category present
- credibility: the source's credibility tier, normalized
- timeliness: under an hour 1.0, under a day 0.7, older 0.4
"""

from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from .dedupe import collapse_near_duplicates
from .logging_utils import get_logger
from .models import (
    CollectionResult,
    FeedItem,
    QualityFilterResult,
    RejectedItem,
    RelevanceScore,
    Source,
    utc_now,
)
from .source_credibility import DEFAULT_WEIGHT, MAX_WEIGHT, credibility_factor
from .vocabulary import DomainVocabulary, EmergencyVocabulary, find_terms

log = get_logger("quality")

MIN_LENGTH = 50
MAX_LENGTH = 10000
KEYWORD_SATURATION = 3
EXTRA_FX_KEYWORDS = (
    "gbp",
    "pip",
    "spread",
    "leverage",
    "margin",
    "economic data",
)


class FeedQualityAnalyzer:
    def __init__(
        self,
        relevance_floor: float = 0.3,
        duplicate_threshold: float = 0.85,
        domain_vocab: Optional[DomainVocabulary] = None,
        emergency_vocab: Optional[EmergencyVocabulary] = None,
    ) -> None:
        self.relevance_floor = relevance_floor
        self.duplicate_threshold = duplicate_threshold
        self.domain_vocab = domain_vocab or DomainVocabulary()
        emergency_vocab = emergency_vocab or EmergencyVocabulary()
        keywords: List[str] = []
        for term in (
            *self.domain_vocab.relevance_keywords,
            *EXTRA_FX_KEYWORDS,
            *emergency_vocab.all_keywords(),
        ):
            if term not in keywords:
                keywords.append(term)
        self.keywords: Tuple[str, ...] = tuple(keywords)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _category_terms(self, source: Optional[Source]) -> List[str]:
        terms = self.domain_vocab.category_terms
        if source is not None:
            return list(terms.get(source.category.value, ()))
        out: List[str] = []
        for group in terms.values():
            out.extend(group)
        return out

    def score_relevance(
        self,
        item: FeedItem,
        source: Optional[Source] = None,
        now: Optional[datetime] = None,
    ) -> RelevanceScore:
        text = item.text
        matches = find_terms(text, self.keywords)
        keyword_match = min(len(matches) / KEYWORD_SATURATION, 1.0)

        reasons: List[str] = []
        contextual = 0.3
        if find_terms(text, self._category_terms(source)):
            contextual += 0.3
            reasons.append("category vocabulary present")

        if source is not None:
            credibility = credibility_factor(source.url)
        else:
            credibility = DEFAULT_WEIGHT / MAX_WEIGHT

        age = item.age_minutes(now)
        if age < 60:
            timeliness = 1.0
        elif age < 24 * 60:
            timeliness = 0.7
        else:
            timeliness = 0.4
            reasons.append("older than 24h")

        if matches:
            reasons.insert(0, f"{len(matches)} domain keyword(s)")
        score = (
            0.4 * keyword_match + 0.3 * contextual + 0.2 * credibility + 0.1 * timeliness
        )
        return RelevanceScore(
            item_id=item.id,
            score=round(min(max(score, 0.0), 1.0), 4),
            keyword_matches=matches,
            reasons=reasons,
        )

    def content_quality(self, item: FeedItem, now: Optional[datetime] = None) -> float:
        """Editorial quality of one item in [0, 1]."""
        content = item.text
        score = 0.5
        if MIN_LENGTH <= len(content) <= MAX_LENGTH:
            score += 0.2
        if item.description and len(item.description) > 20:
            score += 0.15
        if item.age_minutes(now) < 24 * 60:
            score += 0.1
        if item.author:
            score += 0.05
        return min(score, 1.0)

    def _reject_reason(
        self, item: FeedItem, relevance: RelevanceScore, source: Optional[Source]
    ) -> Optional[str]:
        if find_terms(item.text, self.domain_vocab.spam_markers):
            return "promotional content"
        if not relevance.keyword_matches and not find_terms(
            item.text, self._category_terms(source)
        ):
            return "no topical keywords"
        if relevance.score < self.relevance_floor:
            return (
                f"relevance below floor ({relevance.score:.2f} < "
                f"{self.relevance_floor:.2f})"
            )
        return None

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def filter_items(
        self,
        items: Sequence[FeedItem],
        source: Optional[Source] = None,
        now: Optional[datetime] = None,
    ) -> QualityFilterResult:
        now = now or utc_now()
        unique, dupes = collapse_near_duplicates(items, self.duplicate_threshold)
        result = QualityFilterResult(duplicates=len(dupes))
        for dup in dupes:
            result.rejected.append(RejectedItem(item=dup, reason="near-duplicate"))

        qualities: List[float] = []
        for item in unique:
            relevance = self.score_relevance(item, source, now)
            result.scores[item.id] = relevance
            qualities.append((self.content_quality(item, now) + relevance.score) / 2)
            reason = self._reject_reason(item, relevance, source)
            if reason is None:
                result.accepted.append(item)
            else:
                result.rejected.append(
                    RejectedItem(item=item, reason=reason, score=relevance.score)
                )
            log.debug(
                f"item_scored id={item.id[:12]} relevance={relevance.score:.2f} "
                f"accepted={reason is None}"
            )

        result.accepted.sort(key=lambda it: result.scores[it.id].score, reverse=True)
        result.quality_score = sum(qualities) / len(qualities) if qualities else 0.0
        return result

    def apply(
        self,
        result: CollectionResult,
        source: Optional[Source] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[CollectionResult, QualityFilterResult]:
        """Filter a result's items; return the filtered result and the report."""
        if not result.items:
            return result, QualityFilterResult()
        report = self.filter_items(result.items, source, now)
        metadata = dataclasses.replace(
            result.metadata,
            duplicates=result.metadata.duplicates + report.duplicates,
            quality_score=report.quality_score,
        )
        if report.rejected:
            log.debug(
                f"quality_filtered source={result.source_id} "
                f"accepted={len(report.accepted)} rejected={len(report.rejected)}"
            )
        return (
            dataclasses.replace(result, items=report.accepted, metadata=metadata),
            report,
        )
