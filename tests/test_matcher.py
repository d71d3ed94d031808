import numpy as np
import pytest

from live_vision.matcher import IdentityMatcher, match_embedding
from live_vision.types import Identity, MatchResult


def _alice_matcher(threshold=0.6):
    alice = Identity(name="Alice", embeddings=(np.array([1.0, 0.0], dtype=np.float32),))
    return IdentityMatcher.from_identities([alice], threshold=threshold)


def test_close_embedding_matches_enrolled_identity():
    result = _alice_matcher().match(np.array([0.6, 0.0]))

    assert result.is_known
    assert result.name == "Alice"
    assert result.distance == pytest.approx(0.4)
    assert result.confidence == pytest.approx(0.6)


def test_distant_embedding_is_unknown_even_when_closest():
    result = _alice_matcher().match(np.array([0.2, 0.0]))

    assert not result.is_known
    assert result.name == "unknown"
    assert result.distance == pytest.approx(0.8)
    assert result.confidence == pytest.approx(0.2)


def test_distance_equal_to_threshold_is_a_match():
    result = _alice_matcher(threshold=0.5).match(np.array([0.5, 0.0]))

    assert result.is_known
    assert result.name == "Alice"


def test_empty_gallery_has_no_matcher_and_reports_unknown():
    assert IdentityMatcher.from_identities([], threshold=0.6) is None

    result = match_embedding(None, np.array([1.0, 0.0]))
    assert result == MatchResult.unknown()
    assert result.name == "unknown"
    assert not result.is_known


def test_each_sample_is_compared_individually():
    # The mean of these two samples sits far from both of them.
    bob = Identity(
        name="Bob",
        embeddings=(np.array([1.0, 0.0], dtype=np.float32), np.array([-1.0, 0.0], dtype=np.float32)),
    )
    carol = Identity(name="Carol", embeddings=(np.array([0.0, 1.0], dtype=np.float32),))
    matcher = IdentityMatcher.from_identities([bob, carol], threshold=0.6)

    assert matcher.size == 3
    assert matcher.dimension == 2
    assert matcher.match(np.array([-0.9, 0.1])).name == "Bob"
    assert matcher.match(np.array([0.1, 0.9])).name == "Carol"
    assert not matcher.match(np.array([0.0, 0.0])).is_known


def test_confidence_is_clamped_for_large_distances():
    result = _alice_matcher().match(np.array([-1.0, 0.0]))

    assert result.distance == pytest.approx(2.0)
    assert result.confidence == 0.0


def test_dimension_mismatch_is_rejected():
    with pytest.raises(ValueError):
        _alice_matcher().match(np.array([1.0, 0.0, 0.0]))


def test_non_finite_query_is_rejected():
    with pytest.raises(ValueError):
        _alice_matcher().match(np.array([np.nan, 0.0]))


def test_non_finite_gallery_embedding_is_rejected():
    ghost = Identity(name="Ghost", embeddings=(np.array([np.nan, 0.0], dtype=np.float32),))

    with pytest.raises(ValueError):
        IdentityMatcher.from_identities([ghost], threshold=0.6)


def test_overflowing_distance_is_unknown():
    big = Identity(name="Big", embeddings=(np.array([3e38, 0.0], dtype=np.float32),))
    matcher = IdentityMatcher.from_identities([big], threshold=0.6)

    result = matcher.match(np.array([-3e38, 0.0]))

    assert not result.is_known
    assert result.name == "unknown"
