import numpy as np
from dataclasses import dataclass
from scipy import optimize
from scipy.stats import false_discovery_control, gaussian_kde, nbinom, poisson
from scipy.signal import argrelextrema

from cart_utils.validation import ParameterError


@dataclass(frozen=True)
class BackgroundFit:
    """
    Distribution fitted to the background counts of one hashtag
    """

    mu: float
    size: float  # inf when the counts are not overdispersed and a Poisson is used
    cutoff: float


def clr_normalize(counts: np.ndarray) -> np.ndarray:
    """
    Centered log-ratio transform of each row (one hashtag) across cells,
    log1p(x / exp(mean(log1p(x)))) as used for hashtag counts

    Args:
        counts: tags x cells array of raw counts

    Returns:
        Array of the same shape with normalized values
    """
    counts = np.asarray(counts, dtype=float)
    geo_mean = np.exp(np.log1p(counts).mean(axis=1, keepdims=True))
    return np.log1p(counts / geo_mean)


def fit_background(counts: np.ndarray, quantile: float, trim_quantile: float = 0.995) -> BackgroundFit:
    """
    Fit a negative binomial to hashtag background counts and derive the positivity cutoff

    Values above the @trim_quantile of the counts are discarded before fitting.
    The mean is the maximum likelihood estimate of mu; the size is estimated by
    bounded maximum likelihood. Counts that are not overdispersed fall back to Poisson.

    Args:
        counts: Raw counts of one tag in its background cells
        quantile: Quantile of the fitted distribution used as cutoff
        trim_quantile: Quantile above which background values are discarded

    Returns:
        Fitted parameters and the cutoff above which a count is positive
    """
    counts = np.asarray(counts, dtype=float)
    if len(counts) == 0:
        raise ParameterError("Cannot fit a background distribution to zero cells")
    counts = counts[counts <= np.quantile(counts, trim_quantile)]
    mu = counts.mean()
    if mu == 0:
        return BackgroundFit(mu=0.0, size=np.inf, cutoff=0.0)
    var = counts.var(ddof=1) if len(counts) > 1 else 0.0
    if var <= mu:
        return BackgroundFit(mu=mu, size=np.inf, cutoff=float(poisson.ppf(quantile, mu)))

    def negative_log_likelihood(log_size):
        size = np.exp(log_size)
        return -np.sum(nbinom.logpmf(counts, size, size / (size + mu)))

    # method of moments estimate bounds the search
    mom_size = mu**2 / (var - mu)
    res = optimize.minimize_scalar(
        negative_log_likelihood,
        method="bounded",
        bounds=(np.log(mom_size) - 5, np.log(mom_size) + 5),
        options={"xatol": 0.001},
    )
    size = float(np.exp(res.x)) if res.success else mom_size
    cutoff = float(nbinom.ppf(quantile, size, size / (size + mu)))
    return BackgroundFit(mu=mu, size=size, cutoff=cutoff)


def kde_modes(values: np.ndarray, n_points: int = 100) -> tuple[float, float] | None:
    """
    Dominant (negative) mode and highest mode of a Gaussian kernel density
    estimate of one tag's normalized counts

    Args:
        values: Normalized counts of one tag across cells
        n_points: Grid size for evaluating the density

    Returns:
        (low, high) mode positions, or None if the density has fewer than two distinct modes
    """
    values = np.asarray(values, dtype=float)
    if len(values) < 2:
        return None
    try:
        model = gaussian_kde(values)
    except (np.linalg.LinAlgError, ValueError):
        # constant values have a singular covariance
        return None
    grid = np.linspace(np.quantile(values, 0.001), np.quantile(values, 0.999), n_points)
    density = model(grid)
    extrema = argrelextrema(density, np.greater)[0]
    if len(extrema) <= 1:
        return None
    low_extreme = extrema[np.argmax(density[extrema])]
    high_extreme = extrema.max()
    if low_extreme == high_extreme:
        return None
    return float(grid[low_extreme]), float(grid[high_extreme])


def mode_threshold(modes: tuple[float, float], q: float) -> float:
    """Threshold at quantile @q between the low and the high mode"""
    return float(np.quantile(modes, q))


def adjust_pvalues(pvalues: np.ndarray, method: str = "bonferroni") -> np.ndarray:
    """
    Correct p-values for multiple testing

    Args:
        pvalues: Raw p-values of all tested genes
        method: 'bonferroni', 'bh' (Benjamini-Hochberg) or 'none'
    """
    pvalues = np.asarray(pvalues, dtype=float)
    if len(pvalues) == 0 or method == "none":
        return pvalues.copy()
    if method == "bonferroni":
        return np.minimum(pvalues * len(pvalues), 1.0)
    if method == "bh":
        return false_discovery_control(pvalues, method="bh")
    raise ParameterError(f"Unknown multiple testing correction: {method}")
