"""Threshold decisions over model scores.

Same-person and document matches accept a score equal to the threshold;
liveness requires both scores to be strictly above theirs.
"""

from __future__ import annotations


def is_same_person(score_fm: float, score_mn: float, threshold: float) -> bool:
    return score_fm >= threshold and score_mn >= threshold


def is_liveness(score_crop: float, score_full: float, threshold_crop: float, threshold_full: float) -> bool:
    return score_crop > threshold_crop and score_full > threshold_full


def is_document_match(score: float, threshold: float) -> bool:
    return score >= threshold


def is_face_mask(score: float, threshold: float) -> bool:
    return score >= threshold
