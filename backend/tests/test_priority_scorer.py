"""
Tests for the Priority Scorer.

Covers sub-score bins, the 100 ceiling, priority rules, monotonicity,
injected config overrides and audience-string parsing.
"""
from datetime import datetime

import pytest


def make_inputs(**overrides):
    from productguard.services.scoring import ScoringInputs

    values = {
        "match_confidence": 0.5,
        "platform": "forum",
        "audience_count": 0,
        "monetization_detected": False,
        "estimated_revenue_loss": 0.0,
        "country": None,
    }
    values.update(overrides)
    return ScoringInputs(**values)


# =============================================================================
# TEST: REFERENCE CASES
# =============================================================================

class TestReferenceCases:
    """Worked examples from product documentation."""

    def test_maximal_case_is_capped_at_100_and_p0(self):
        from productguard.services.scoring import PriorityScorer
        from productguard.models.db_models import Priority

        result = PriorityScorer().score(make_inputs(
            match_confidence=0.9,
            platform="telegram",
            audience_count=60000,
            monetization_detected=True,
            estimated_revenue_loss=6000,
            country="US",
        ))

        # 18 + 25 + 30 + 14 + 10 + 10 = 107 before the ceiling
        assert sum(result.breakdown.values()) == 107
        assert result.severity_score == 100
        assert result.priority == Priority.P0

    def test_low_signal_forum_case_is_p2(self):
        from productguard.services.scoring import PriorityScorer
        from productguard.models.db_models import Priority

        result = PriorityScorer().score(make_inputs(
            match_confidence=0.1,
            platform="forum",
            audience_count=50,
        ))

        assert result.breakdown == {
            "match_confidence_points": 2,
            "audience_points": 5,
            "monetization_points": 0,
            "platform_points": 10,
            "revenue_impact_points": 0,
            "country_bonus_points": 0,
        }
        assert result.severity_score == 17
        assert result.priority == Priority.P2


# =============================================================================
# TEST: SUB-SCORES
# =============================================================================

class TestSubScores:
    """Stepped bins and weights."""

    @pytest.mark.parametrize("count,points", [
        (0, 0), (1, 5), (99, 5), (100, 10), (499, 10), (500, 15),
        (1999, 15), (2000, 20), (9999, 20), (10000, 25), (5000000, 25),
    ])
    def test_audience_bins(self, count, points):
        from productguard.services.scoring import PriorityScorer
        assert PriorityScorer().score_audience(count) == points

    @pytest.mark.parametrize("loss,points", [
        (0, 0), (50, 2), (99.99, 2), (100, 4), (499, 4), (500, 6),
        (999, 6), (1000, 8), (4999, 8), (5000, 10),
    ])
    def test_revenue_bins(self, loss, points):
        from productguard.services.scoring import PriorityScorer
        assert PriorityScorer().score_revenue_impact(loss) == points

    def test_platform_weights_and_unknown_default(self):
        from productguard.services.scoring import PriorityScorer

        scorer = PriorityScorer()
        assert scorer.score_platform("telegram") == 14
        assert scorer.score_platform("Torrent") == 13
        assert scorer.score_platform("social") == 9
        assert scorer.score_platform("myspace") == 8  # 0.5 * 15 = 7.5, rounded half up
        assert scorer.score_platform(None) == 8

    def test_country_tiers(self):
        from productguard.services.scoring import PriorityScorer

        scorer = PriorityScorer()
        assert scorer.score_country("US") == 10
        assert scorer.score_country("united  kingdom") == 10
        assert scorer.score_country("DE") == 5
        assert scorer.score_country("Japan") == 2
        assert scorer.score_country("RU") == 0
        assert scorer.score_country(None) == 0

    def test_country_match_is_exact_not_substring(self):
        """'USSR' must not pick up the US bonus."""
        from productguard.services.scoring import PriorityScorer
        assert PriorityScorer().score_country("USSR") == 0

    def test_confidence_rounds_half_up(self):
        from productguard.services.scoring import PriorityScorer

        scorer = PriorityScorer()
        assert scorer.score_match_confidence(0.025) == 1  # 0.5 points -> 1
        assert scorer.score_match_confidence(1.0) == 20
        assert scorer.score_match_confidence(0.0) == 0


# =============================================================================
# TEST: PRIORITY RULES
# =============================================================================

class TestPriority:
    """First matching rule wins."""

    def test_monetized_high_confidence_is_p0_even_with_low_score(self):
        from productguard.services.scoring import PriorityScorer
        from productguard.models.db_models import Priority

        result = PriorityScorer().score(make_inputs(match_confidence=0.75, monetization_detected=True))
        assert result.severity_score < 75
        assert result.priority == Priority.P0

    def test_huge_audience_needs_confidence_for_p0(self):
        from productguard.services.scoring import PriorityScorer
        from productguard.models.db_models import Priority

        scorer = PriorityScorer()
        assert scorer.score(make_inputs(audience_count=50000, match_confidence=0.6)).priority == Priority.P0
        assert scorer.score(make_inputs(audience_count=50000, match_confidence=0.59)).priority == Priority.P1

    def test_monetized_low_confidence_is_p1(self):
        from productguard.services.scoring import PriorityScorer
        from productguard.models.db_models import Priority

        result = PriorityScorer().score(make_inputs(match_confidence=0.3, monetization_detected=True))
        assert result.priority == Priority.P1

    def test_audience_5k_is_p1(self):
        from productguard.services.scoring import PriorityScorer
        from productguard.models.db_models import Priority

        result = PriorityScorer().score(make_inputs(match_confidence=0.1, audience_count=5000))
        assert result.priority == Priority.P1


# =============================================================================
# TEST: PROPERTIES
# =============================================================================

class TestProperties:
    """Range and monotonicity across the input space."""

    PLATFORMS = ["telegram", "forum", "unknown"]
    AUDIENCES = [0, 50, 400, 1500, 8000, 60000]
    LOSSES = [0, 50, 300, 800, 3000, 9000]
    CONFIDENCES = [0.0, 0.2, 0.5, 0.75, 1.0]

    def test_score_always_in_range(self):
        from productguard.services.scoring import PriorityScorer
        from productguard.models.db_models import Priority

        scorer = PriorityScorer()
        for platform in self.PLATFORMS:
            for audience in self.AUDIENCES:
                for monetized in (False, True):
                    for country in (None, "US", "DE", "XX"):
                        result = scorer.score(make_inputs(
                            match_confidence=1.0, platform=platform, audience_count=audience,
                            monetization_detected=monetized, estimated_revenue_loss=9000, country=country,
                        ))
                        assert 0 <= result.severity_score <= 100
                        assert result.priority in (Priority.P0, Priority.P1, Priority.P2)

    def test_monotonic_in_confidence_audience_and_loss(self):
        from productguard.services.scoring import PriorityScorer

        scorer = PriorityScorer()

        scores = [scorer.score(make_inputs(match_confidence=c)).severity_score for c in self.CONFIDENCES]
        assert scores == sorted(scores)

        scores = [scorer.score(make_inputs(audience_count=a)).severity_score for a in self.AUDIENCES]
        assert scores == sorted(scores)

        scores = [scorer.score(make_inputs(estimated_revenue_loss=loss)).severity_score for loss in self.LOSSES]
        assert scores == sorted(scores)

    def test_deterministic(self):
        from productguard.services.scoring import PriorityScorer

        inputs = make_inputs(match_confidence=0.66, audience_count=777, country="CA")
        assert PriorityScorer().score(inputs) == PriorityScorer().score(inputs)


# =============================================================================
# TEST: INJECTED CONFIG
# =============================================================================

class TestScoringConfig:
    """Per-tenant overrides never touch the defaults."""

    def test_override_platform_weights(self):
        from productguard.services.scoring import PriorityScorer, ScoringConfig, DEFAULT_SCORING_CONFIG

        custom = ScoringConfig(platform_weights={"forum": 1.0}, default_platform_weight=0.0)
        assert PriorityScorer(custom).score_platform("forum") == 15
        assert PriorityScorer(custom).score_platform("telegram") == 0
        assert PriorityScorer(DEFAULT_SCORING_CONFIG).score_platform("forum") == 10

    def test_default_tables_are_read_only(self):
        from productguard.services.scoring import DEFAULT_SCORING_CONFIG

        with pytest.raises(TypeError):
            DEFAULT_SCORING_CONFIG.platform_weights["forum"] = 1.0

    def test_next_check_intervals(self):
        from productguard.services.scoring import PriorityScorer
        from productguard.models.db_models import Priority

        scorer = PriorityScorer()
        now = datetime(2026, 1, 1, 12, 0, 0)
        assert scorer.calculate_next_check(Priority.P0, now) == datetime(2026, 1, 2, 12, 0, 0)
        assert scorer.calculate_next_check(Priority.P1, now) == datetime(2026, 1, 4, 12, 0, 0)
        assert scorer.calculate_next_check(Priority.P2, now) == datetime(2026, 1, 8, 12, 0, 0)


# =============================================================================
# TEST: AUDIENCE PARSING
# =============================================================================

class TestParseAudienceCount:
    """Free-text audience sizes."""

    @pytest.mark.parametrize("text,expected", [
        ("12.4K followers", 12400),
        ("2,500 members", 2500),
        ("2.1M views", 2100000),
        ("850 subscribers", 850),
        ("3k", 3000),
        (None, 0),
        ("", 0),
        ("lots of people", 0),
    ])
    def test_parse(self, text, expected):
        from productguard.services.scoring import parse_audience_count
        assert parse_audience_count(text) == expected
