from .version import __version__

from .affinity import (
    Affinities,
    PerplexityBasedAffinities,
    calibrate_row,
    compute_affinities,
    conditional_probabilities,
    joint_probabilities,
)
from .distances import squared_distances
from .tsne import TSNE, TSNEEmbedding, OptimizationInterrupt, embed
from .utils import InvalidInput, NumericDegeneracy
