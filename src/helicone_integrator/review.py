from __future__ import annotations

import logging

from helicone_integrator.models import ReviewDecision
from helicone_integrator.observability import log_event, log_warning_event
from helicone_integrator.state import ReviewDelivery, StateStore


LOGGER = logging.getLogger("helicone_integrator.review")


class ReviewDispatcher:
    """Delivers a reviewer's decision into a running instance's decision slot.

    Only the latest delivery before the instance consumes the slot is honored.
    """

    def __init__(self, state: StateStore) -> None:
        self._state = state

    def submit_review(
        self, integration_id: str, approved: bool, feedback: str | None = None
    ) -> ReviewDelivery:
        decision = ReviewDecision.normalized(approved, feedback)
        delivery = self._state.deliver_review_decision(integration_id, decision)
        log_event(
            LOGGER,
            "review_decision_delivered",
            integration_id=integration_id,
            approved=decision.approved,
            has_feedback=decision.feedback is not None,
            review_window=delivery.review_window,
        )
        if not delivery.window_open:
            log_warning_event(
                LOGGER,
                "review_decision_outside_window",
                integration_id=integration_id,
                review_window=delivery.review_window,
            )
        return delivery
