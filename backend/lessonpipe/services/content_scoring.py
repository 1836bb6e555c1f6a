"""Stateless content-scoring helpers used by SceneClassifier.

All matching is lowercase substring matching, the same rule the scene
catalog was written against. Pattern data lives in data/scene_patterns.yaml.
"""

import re
from collections import Counter
from itertools import combinations
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import yaml

from lessonpipe.schemas.lesson import LessonAnalysis
from lessonpipe.schemas.scenes import SceneCandidate, ScenePattern

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "data" / "scene_patterns.yaml"

TOPIC_WEIGHT = 0.5
VOCABULARY_WEIGHT = 0.3

# Topic substring -> cultural context for dynamically mined scenes
TOPIC_CONTEXTS = {
    "business": "สภาพแวดล้อมธุรกิจและการทำงานในประเทศไทย",
    "technology": "การใช้เทคโนโลยีในชีวิตประจำวันของคนไทย",
    "travel": "การท่องเที่ยวและสถานที่น่าสนใจในประเทศไทย",
    "culture": "วัฒนธรรมและประเพณีไทย",
    "language": "การเรียนรู้และใช้ภาษาในบริบทไทย",
}

BASE_SITUATIONS = [
    "asking for information",
    "making requests",
    "expressing preferences",
    "problem solving",
    "social interaction",
]

# Scene-name substrings -> cultural elements surfaced to the script writer
CULTURAL_ELEMENT_RULES: List[Tuple[Tuple[str, ...], List[str]]] = [
    (("restaurant", "food"), ["Thai dining etiquette", "spice levels", "popular dishes"]),
    (("social", "interaction"), ["wai greeting", "respect for elders", "face-saving"]),
    (("work", "business"), ["hierarchy awareness", "formal address", "meeting culture"]),
    (("transportation", "travel"), ["Bangkok traffic", "tuk-tuk bargaining", "temple visits"]),
]


def load_scene_catalog(path: Optional[Path] = None) -> List[ScenePattern]:
    """Load and validate the ordered scene catalog."""
    with open(path or DEFAULT_CATALOG_PATH, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or []
    return [ScenePattern.model_validate(entry) for entry in raw]


def combine_text(analysis: LessonAnalysis) -> str:
    """Title, description, every segment's text and topics, lowercased."""
    segment_texts = " ".join(
        f"{seg.title} {seg.content} {' '.join(seg.key_topics)}" for seg in analysis.segments
    )
    return f"{analysis.title} {analysis.description} {segment_texts}".lower()


def extract_key_topics(analysis: LessonAnalysis) -> List[str]:
    """All segment topics, deduplicated, in first-seen order."""
    return list(dict.fromkeys(topic for seg in analysis.segments for topic in seg.key_topics))


def matched_keywords(text: str, keywords: Iterable[str]) -> List[str]:
    """Keywords that occur in ``text`` (already lowercased)."""
    return [kw for kw in keywords if kw.lower() in text]


def topic_hits(topics: Iterable[str], keywords: Sequence[str]) -> int:
    """Number of topics containing at least one keyword."""
    lowered = [kw.lower() for kw in keywords]
    return sum(1 for topic in topics if any(kw in topic.lower() for kw in lowered))


def vocabulary_hits(words: Iterable[str], keywords: Sequence[str]) -> int:
    """Number of vocabulary words overlapping a keyword in either direction."""
    lowered = [kw.lower() for kw in keywords]
    hits = 0
    for word in words:
        w = word.lower()
        if not w:
            continue
        if any(kw in w or w in kw for kw in lowered):
            hits += 1
    return hits


def pattern_confidence(
    text: str,
    topics: Sequence[str],
    vocabulary: Sequence[str],
    pattern: ScenePattern,
) -> float:
    """Score a catalog pattern against lesson content, clamped to [0, 1].

    score = keyword_hits + 0.5 * topic_hits + 0.3 * vocabulary_hits,
    normalised once by the pattern's keyword count.
    """
    total = len(pattern.keywords)
    if total == 0:
        return 0.0
    score = (
        len(matched_keywords(text, pattern.keywords))
        + TOPIC_WEIGHT * topic_hits(topics, pattern.keywords)
        + VOCABULARY_WEIGHT * vocabulary_hits(vocabulary, pattern.keywords)
    )
    return min(score / total, 1.0)


def topic_cooccurrence(analysis: LessonAnalysis) -> Counter:
    """Count, per unordered topic pair, the segments in which both appear.

    Keys are alphabetically sorted tuples; insertion order follows the
    lesson, which keeps downstream ranking deterministic.
    """
    pairs: Counter = Counter()
    for seg in analysis.segments:
        unique = sorted(set(seg.key_topics))
        for pair in combinations(unique, 2):
            pairs[pair] += 1
    return pairs


def scene_name_from_topics(topics: Sequence[str]) -> str:
    return "_".join(re.sub(r"[^a-zA-Z0-9]", "", t).lower() for t in topics)


def cultural_context_for_topics(topics: Sequence[str]) -> str:
    for topic in topics:
        for key, context in TOPIC_CONTEXTS.items():
            if key in topic.lower():
                return context
    return f"การใช้ภาษาอังกฤษในบริบท{'และ'.join(topics)}ในประเทศไทย"


def situations_for_topics(topics: Sequence[str]) -> List[str]:
    specific: List[str] = []
    if any("technology" in t or "ai" in t for t in topics):
        specific += ["technical support", "explaining features", "troubleshooting"]
    if any("business" in t or "work" in t for t in topics):
        specific += ["professional meetings", "project discussions", "networking"]
    return [*BASE_SITUATIONS, *specific][:4]


def relevant_vocabulary(
    scenes: Sequence[SceneCandidate], analysis: LessonAnalysis, limit: int = 15
) -> List[str]:
    """Lesson words related to any matched scene keyword."""
    keywords = [kw.lower() for scene in scenes for kw in scene.matched_keywords]
    words: List[str] = []
    for item in analysis.vocabulary:
        w = item.word.lower()
        if not w:
            continue
        if any(kw in w or w in kw or kw in item.definition.lower() for kw in keywords):
            words.append(item.word)
    return words[:limit]


def cultural_elements(scenes: Sequence[SceneCandidate]) -> List[str]:
    elements: List[str] = []
    for scene in scenes:
        for needles, additions in CULTURAL_ELEMENT_RULES:
            if any(n in scene.name for n in needles):
                elements.extend(additions)
    return list(dict.fromkeys(elements))


def practical_applications(scenes: Sequence[SceneCandidate], limit: int = 10) -> List[str]:
    applications: List[str] = []
    for scene in scenes:
        label = scene.name.replace("_", " ")
        applications += [
            f"Practice {label} conversations with Thai friends",
            f"Use {label} vocabulary in real situations",
            f"Role-play {label} scenarios",
        ]
    return list(dict.fromkeys(applications))[:limit]
