"""Services for the moral graph backend."""

from .deduplication import Deduplicator
from .graph_summary import GraphSummarizer
from .hypothesis_generation import HypothesisGenerator
from .hypothesis_sampler import HypothesisSampler
from .prompt_manager import PromptManager

__all__ = [
    'Deduplicator',
    'GraphSummarizer',
    'HypothesisGenerator',
    'HypothesisSampler',
    'PromptManager',
]
