import numpy as np

from exactTSNE.tsne import TSNEEmbedding, kl_divergence_exact


def kl_divergence(embedding: TSNEEmbedding) -> float:
    """Compute the exact KL divergence between the embedding affinities and
    the true (unexaggerated) joint probabilities."""
    error, _ = kl_divergence_exact(
        embedding, embedding.affinities.P, should_eval_error=True
    )
    return error


def pBIC(embedding: TSNEEmbedding) -> float:
    if not hasattr(embedding.affinities, "perplexity"):
        raise TypeError("The embedding affinity matrix has no attribute `perplexity`")
    n_samples = embedding.shape[0]

    if embedding.kl_divergence is None:
        kl_divergence_ = kl_divergence(embedding)
    else:
        kl_divergence_ = embedding.kl_divergence

    return 2 * kl_divergence_ + np.log(n_samples) * \
        embedding.affinities.perplexity / n_samples
