"""
Scoring for the school anxiety questionnaire.
"""

from schoolpsy.modules.base import BaseTestModule


# Upper bounds of the raw score bands
LEVELS = (
    (10, 'low'),
    (20, 'moderate'),
    (30, 'elevated'),
)
MAX_SCORE = 40


class AnxietyTest(BaseTestModule):
    """Derives the anxiety level from the raw score and explains it."""

    def compute(self, fields):
        raw_score = fields.get('raw_score')
        if raw_score is None:
            return {}

        raw_score = int(raw_score)
        if not 0 <= raw_score <= MAX_SCORE:
            raise ValueError(f"raw_score must be between 0 and {MAX_SCORE}")

        return {'raw_score': raw_score, 'anxiety_level': self.level(raw_score)}

    def interpret(self, record):
        level = record.get('anxiety_level')
        if level is None:
            return {}
        return {
            'level': level,
            'needs_follow_up': level in ('elevated', 'high'),
        }

    @staticmethod
    def level(raw_score):
        for bound, name in LEVELS:
            if raw_score <= bound:
                return name
        return 'high'
