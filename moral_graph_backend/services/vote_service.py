"""Recording participant votes on upgrade edges."""

import logging
from typing import Optional, Union

from moral_graph_backend.models import VoteType
from moral_graph_backend.services.errors import InvariantViolation, NotFoundError

logger = logging.getLogger(__name__)


async def record_vote(
    repo,
    deliberation_id: int,
    user_id: int,
    from_value_id: int,
    to_value_id: int,
    context_id: str,
    vote_type: Union[VoteType, str],
    comment: Optional[str] = None,
    story: Optional[str] = None,
) -> VoteType:
    """
    Upsert a user's vote on (from, to); a later vote replaces an earlier one.

    Raises:
        InvariantViolation: self-loop or unknown vote type
        NotFoundError: value or context missing from the deliberation
    """
    if from_value_id == to_value_id:
        raise InvariantViolation(
            "A vote cannot connect a value to itself",
            {"value_id": from_value_id},
        )
    try:
        vote_type = VoteType(vote_type)
    except ValueError as exc:
        raise InvariantViolation(f"Unknown vote type {vote_type!r}") from exc

    for value_id in (from_value_id, to_value_id):
        if await repo.get_canonical_value(deliberation_id, value_id) is None:
            raise NotFoundError("value", value_id)
    if await repo.get_context(deliberation_id, context_id) is None:
        raise NotFoundError("context", context_id)

    await repo.upsert_vote(
        deliberation_id,
        user_id,
        from_value_id,
        to_value_id,
        context_id,
        vote_type,
        comment=comment,
        story=story,
    )
    logger.info(
        "User %s voted %s on %s -> %s in %r",
        user_id,
        vote_type.value,
        from_value_id,
        to_value_id,
        context_id,
    )
    return vote_type
