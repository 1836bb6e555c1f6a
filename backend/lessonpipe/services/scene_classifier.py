"""Scene classification for lesson content.

Scores the lesson against the static scene catalog, mines co-occurring topic
pairs for contexts the catalog does not anticipate, and ranks everything
into primary (top 2) and secondary (next 3) scenes.
"""

import logging
from typing import List, Optional, Sequence

from lessonpipe.schemas.lesson import LessonAnalysis
from lessonpipe.schemas.scenes import SceneAnalysis, SceneCandidate, ScenePattern
from lessonpipe.services import content_scoring

logger = logging.getLogger(__name__)

PATTERN_THRESHOLD = 0.1
COOCCURRENCE_THRESHOLD = 0.15
PRIMARY_COUNT = 2
SECONDARY_COUNT = 3


class SceneClassifier:
    """Ranks situational scene hypotheses for a lesson.

    Stateless apart from the catalog it was built with; safe to share.
    """

    def __init__(self, catalog: Optional[Sequence[ScenePattern]] = None):
        self.catalog: List[ScenePattern] = list(
            catalog if catalog is not None else content_scoring.load_scene_catalog()
        )

    def candidates(self, analysis: LessonAnalysis) -> List[SceneCandidate]:
        """All scenes above threshold, ranked by confidence.

        Python's sort is stable, so ties keep catalog order with static
        patterns ahead of mined ones.
        """
        scenes = self._catalog_scenes(analysis) + self._dynamic_scenes(analysis)
        return sorted(scenes, key=lambda s: s.confidence, reverse=True)

    def classify(self, analysis: LessonAnalysis) -> SceneAnalysis:
        ranked = self.candidates(analysis)
        result = SceneAnalysis(
            primary_scenes=ranked[:PRIMARY_COUNT],
            secondary_scenes=ranked[PRIMARY_COUNT:PRIMARY_COUNT + SECONDARY_COUNT],
            suggested_vocabulary=content_scoring.relevant_vocabulary(ranked, analysis),
            cultural_elements=content_scoring.cultural_elements(ranked),
            practical_applications=content_scoring.practical_applications(ranked),
        )
        logger.info(
            f"Classified lesson {analysis.title!r}: "
            f"primary={[s.name for s in result.primary_scenes]} "
            f"secondary={[s.name for s in result.secondary_scenes]}"
        )
        return result

    def _catalog_scenes(self, analysis: LessonAnalysis) -> List[SceneCandidate]:
        text = content_scoring.combine_text(analysis)
        topics = content_scoring.extract_key_topics(analysis)
        words = [item.word for item in analysis.vocabulary]

        scenes = []
        for pattern in self.catalog:
            confidence = content_scoring.pattern_confidence(text, topics, words, pattern)
            if confidence > PATTERN_THRESHOLD:
                scenes.append(SceneCandidate(
                    name=pattern.name,
                    confidence=confidence,
                    matched_keywords=content_scoring.matched_keywords(text, pattern.keywords),
                    cultural_notes=pattern.cultural_context,
                    situations=list(pattern.situations),
                ))
        return scenes

    def _dynamic_scenes(self, analysis: LessonAnalysis) -> List[SceneCandidate]:
        topic_count = len(content_scoring.extract_key_topics(analysis))
        if topic_count == 0:
            return []

        scenes = []
        for pair, frequency in content_scoring.topic_cooccurrence(analysis).items():
            confidence = min(frequency / topic_count, 1.0)
            if confidence > COOCCURRENCE_THRESHOLD:
                topics = list(pair)
                scenes.append(SceneCandidate(
                    name=content_scoring.scene_name_from_topics(topics),
                    confidence=confidence,
                    matched_keywords=topics,
                    cultural_notes=content_scoring.cultural_context_for_topics(topics),
                    situations=content_scoring.situations_for_topics(topics),
                    dynamic=True,
                ))
        return scenes
