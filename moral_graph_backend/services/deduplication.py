"""
Value deduplication.

Clusters unlinked value submissions into groups that express the same value,
resolves each cluster against existing canonical values, and links the
cluster's submissions to exactly one canonical value.

Small batches are clustered by one LLM call. Larger batches are first
coarsened with DBSCAN over policy embeddings and the LLM then splits each
coarse group. A failure in one cluster is logged and the cluster is left
unlinked for the next run.

Runs for the same deliberation must be serialized by the caller.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence

from moral_graph_backend.config import (
    CANONICAL_MATCH_DISTANCE,
    CANONICAL_SEARCH_LIMIT,
    DEDUPLICATION_BATCH_LIMIT,
    LLM_ONLY_CLUSTER_LIMIT,
    NEAR_IDENTICAL_DISTANCE,
)
from moral_graph_backend.schemas import DuplicateChoice, RepresentativeChoice, ValueClusters
from moral_graph_backend.services.clustering import chunked, coarse_clusters
from moral_graph_backend.services.embedding_service import value_to_text
from moral_graph_backend.services.errors import InvariantViolation, MoralGraphError, SchemaViolation
from moral_graph_backend.services.graph_traversal import merge_overlapping_groups

logger = logging.getLogger(__name__)


@dataclass
class DeduplicationResult:
    processed: int = 0
    new_canonical_count: int = 0
    linked_existing_count: int = 0
    skipped_clusters: int = 0
    failed_clusters: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def _value_payload(value) -> Dict:
    return {
        "id": value.id,
        "title": value.title,
        "description": value.description,
        "policies": list(value.policies or []),
    }


class Deduplicator:
    """Links raw value submissions to canonical values."""

    def __init__(
        self,
        embedding_service,
        arbiter,
        repo,
        llm_only_limit: int = LLM_ONLY_CLUSTER_LIMIT,
        match_distance: float = CANONICAL_MATCH_DISTANCE,
        near_identical_distance: float = NEAR_IDENTICAL_DISTANCE,
        search_limit: int = CANONICAL_SEARCH_LIMIT,
    ):
        self.embedding_service = embedding_service
        self.arbiter = arbiter
        self.repo = repo
        self.llm_only_limit = llm_only_limit
        self.match_distance = match_distance
        self.near_identical_distance = near_identical_distance
        self.search_limit = search_limit

    async def deduplicate(
        self,
        deliberation_id: int,
        batch_limit: int = DEDUPLICATION_BATCH_LIMIT,
    ) -> DeduplicationResult:
        result = DeduplicationResult()
        submissions = await self.repo.fetch_unlinked_submissions(deliberation_id, batch_limit)
        if not submissions:
            logger.info("No unlinked submissions in deliberation %s", deliberation_id)
            return result

        logger.info("Deduplicating %s submissions in deliberation %s", len(submissions), deliberation_id)
        clusters = await self.cluster(submissions, result)

        for cluster in clusters:
            ids = [submission.id for submission in cluster]
            try:
                await self._resolve_cluster(deliberation_id, cluster, result)
            except MoralGraphError as exc:
                result.failed_clusters += 1
                logger.warning(
                    "Skipping cluster %s in deliberation %s (%s): %s",
                    ids,
                    deliberation_id,
                    exc.code,
                    exc.message,
                )
            except Exception:
                result.failed_clusters += 1
                logger.exception("Cluster %s in deliberation %s failed", ids, deliberation_id)

        logger.info(
            "Deduplication of deliberation %s done: %s linked, %s new canonical values, %s failed clusters",
            deliberation_id,
            result.processed,
            result.new_canonical_count,
            result.failed_clusters,
        )
        return result

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    async def cluster(self, submissions: Sequence, result: Optional[DeduplicationResult] = None) -> List[List]:
        """Group submissions that express the same value; every submission lands in exactly one group."""
        result = result or DeduplicationResult()
        if len(submissions) == 1:
            return [list(submissions)]

        if len(submissions) <= self.llm_only_limit:
            try:
                return await self._llm_cluster(submissions)
            except MoralGraphError as exc:
                result.failed_clusters += 1
                logger.warning("LLM clustering of %s submissions failed: %s", len(submissions), exc.message)
                return []

        await self._ensure_submission_embeddings(submissions)
        embedded = [submission for submission in submissions if submission.embedding is not None]
        clusters: List[List] = [[submission] for submission in submissions if submission.embedding is None]

        for group in coarse_clusters([submission.embedding for submission in embedded]):
            members = [embedded[index] for index in group]
            if len(members) == 1:
                clusters.append(members)
                continue
            for chunk in chunked(members, self.llm_only_limit):
                if len(chunk) == 1:
                    clusters.append(chunk)
                    continue
                try:
                    clusters.extend(await self._llm_cluster(chunk))
                except MoralGraphError as exc:
                    result.failed_clusters += 1
                    logger.warning(
                        "LLM split of coarse group %s failed: %s",
                        [submission.id for submission in chunk],
                        exc.message,
                    )
        return clusters

    async def _llm_cluster(self, submissions: Sequence) -> List[List]:
        by_id = {submission.id: submission for submission in submissions}
        response = await self.arbiter.generate_structured(
            "cluster_values",
            {"values": [_value_payload(submission) for submission in submissions]},
            ValueClusters,
        )

        groups: List[List[int]] = []
        for group in response.groups:
            unknown = [member for member in group if member not in by_id]
            if unknown:
                logger.warning("Dropping unknown ids %s from LLM clustering", unknown)
            known = [member for member in group if member in by_id]
            if known:
                groups.append(known)

        grouped = {member for group in groups for member in group}
        for submission in submissions:
            if submission.id not in grouped:
                logger.warning("LLM clustering omitted submission %s; treating it as its own cluster", submission.id)
                groups.append([submission.id])

        return [[by_id[member] for member in group] for group in merge_overlapping_groups(groups)]

    async def _ensure_submission_embeddings(self, submissions: Sequence) -> None:
        missing = [submission for submission in submissions if submission.embedding is None]
        if not missing:
            return
        embeddings = await self.embedding_service.embed_batch(
            [value_to_text(submission.policies or []) for submission in missing]
        )
        computed = {}
        for submission, embedding in zip(missing, embeddings):
            if embedding is None:
                continue
            submission.embedding = embedding
            computed[submission.id] = embedding
        if computed:
            await self.repo.set_submission_embeddings(computed)

    # ------------------------------------------------------------------
    # Resolution against canonical values
    # ------------------------------------------------------------------

    async def _resolve_cluster(self, deliberation_id: int, cluster: Sequence, result: DeduplicationResult) -> None:
        ids = [submission.id for submission in cluster]
        representative = await self.choose_representative(cluster)
        embedding = await self._embedding_for(representative)

        match = await self.find_existing_value(deliberation_id, representative, embedding)
        if match is not None:
            linked = await self.repo.link_submissions(deliberation_id, ids, match.id)
            if linked == 0:
                result.skipped_clusters += 1
                return
            result.processed += linked
            result.linked_existing_count += 1
            logger.info("Linked submissions %s to canonical value %s", ids, match.id)
            return

        value = await self.repo.create_canonical_value_and_link(
            deliberation_id,
            title=representative.title,
            description=representative.description,
            policies=representative.policies,
            embedding=embedding,
            submission_ids=ids,
        )
        if value is None:
            result.skipped_clusters += 1
            logger.info("Submissions %s were already linked by another run", ids)
            return

        result.new_canonical_count += 1
        result.processed += len(ids)
        logger.info("Created canonical value %s for submissions %s", value.id, ids)

    async def choose_representative(self, cluster: Sequence):
        """The LLM-judged most complete articulation of the cluster."""
        if not cluster:
            raise InvariantViolation("Cannot pick a representative from an empty cluster")
        if len(cluster) == 1:
            return cluster[0]

        by_id = {submission.id: submission for submission in cluster}
        choice = await self.arbiter.generate_structured(
            "choose_representative",
            {"values": [_value_payload(submission) for submission in cluster]},
            RepresentativeChoice,
        )
        if choice.id not in by_id:
            raise SchemaViolation(
                f"Representative {choice.id} is not a member of the cluster",
                {"cluster": list(by_id), "chosen": choice.id},
            )
        return by_id[choice.id]

    async def find_existing_value(self, deliberation_id: int, candidate, embedding: Sequence[float]):
        """Canonical value that is the same value as `candidate`, or None."""
        nearby = await self.repo.find_canonical_values_near(
            deliberation_id,
            embedding,
            limit=self.search_limit,
            max_distance=self.match_distance,
        )
        if not nearby:
            return None

        closest, distance = nearby[0]
        if distance < self.near_identical_distance:
            logger.debug("Canonical value %s is near-identical (distance %.4f)", closest.id, distance)
            return closest

        choice = await self.arbiter.generate_structured(
            "find_duplicate_value",
            {
                "candidate": _value_payload(candidate),
                "existing_values": [_value_payload(value) for value, _ in nearby],
            },
            DuplicateChoice,
        )
        if choice.duplicate_id is None:
            return None

        by_id = {value.id: value for value, _ in nearby}
        if choice.duplicate_id not in by_id:
            raise SchemaViolation(
                f"Duplicate {choice.duplicate_id} was not among the retrieved canonical values",
                {"candidates": list(by_id), "chosen": choice.duplicate_id},
            )
        return by_id[choice.duplicate_id]

    async def _embedding_for(self, submission) -> List[float]:
        if submission.embedding is not None:
            return list(submission.embedding)
        text = value_to_text(submission.policies or [])
        if not text:
            raise InvariantViolation(
                f"Submission {submission.id} has no attention policies to embed",
                {"submission_id": submission.id},
            )
        return await self.embedding_service.embed_text(text)
