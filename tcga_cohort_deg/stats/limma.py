"""
Linear models with empirical-Bayes moderated t-statistics.

A numpy/scipy rendition of the limma workflow for complete (no missing
values) expression matrices:

    fit = lm_fit(expr, design)
    fit = contrasts_fit(fit, contrast)
    fit = ebayes(fit)
    table = top_table(fit)

Smyth, G. K. (2004). Linear models and empirical Bayes methods for assessing
differential expression in microarray experiments. Stat Appl Genet Mol Biol 3(1).
"""

import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import special, stats
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)


@dataclass
class LinearModelFit:
    """Per-gene linear model fit (limma's MArrayLM)."""
    genes: pd.Index
    coef_names: List[str]
    coefficients: np.ndarray        # genes x coefs
    stdev_unscaled: np.ndarray      # genes x coefs
    sigma: np.ndarray               # genes
    df_residual: np.ndarray         # genes
    cov_coefficients: np.ndarray    # coefs x coefs
    amean: np.ndarray               # genes
    # Filled by ebayes()
    df_prior: Optional[float] = None
    s2_prior: Optional[float] = None
    s2_post: Optional[np.ndarray] = None
    df_total: Optional[np.ndarray] = None
    t: Optional[np.ndarray] = None
    p_value: Optional[np.ndarray] = None
    lods: Optional[np.ndarray] = None
    extra: dict = field(default_factory=dict)


def lm_fit(expr: pd.DataFrame, design: pd.DataFrame) -> LinearModelFit:
    """
    Fit a linear model to each gene by ordinary least squares.

    Args:
        expr: genes x samples, no missing values
        design: samples x coefficients, rows in the same order as expr columns
    """
    y = expr.to_numpy(dtype=float)
    x = design.to_numpy(dtype=float)

    if np.isnan(y).any():
        raise ValueError("Expression matrix contains missing values")
    if x.shape[0] != y.shape[1]:
        raise ValueError(f"Design has {x.shape[0]} rows but expression has {y.shape[1]} samples")

    rank = np.linalg.matrix_rank(x)
    if rank < x.shape[1]:
        raise ValueError("Design matrix is not of full column rank")

    n_samples = x.shape[0]
    df_residual = n_samples - rank
    if df_residual < 1:
        raise ValueError("No residual degrees of freedom")

    xtx_inv = np.linalg.inv(x.T @ x)
    coefficients = y @ x @ xtx_inv
    residuals = y - coefficients @ x.T
    sigma = np.sqrt((residuals ** 2).sum(axis=1) / df_residual)

    n_genes = y.shape[0]
    stdev_unscaled = np.tile(np.sqrt(np.diag(xtx_inv)), (n_genes, 1))

    return LinearModelFit(
        genes=expr.index,
        coef_names=list(design.columns),
        coefficients=coefficients,
        stdev_unscaled=stdev_unscaled,
        sigma=sigma,
        df_residual=np.full(n_genes, float(df_residual)),
        cov_coefficients=xtx_inv,
        amean=y.mean(axis=1),
    )


def contrasts_fit(fit: LinearModelFit, contrasts: pd.DataFrame) -> LinearModelFit:
    """
    Re-express the fit in terms of contrasts of the original coefficients.

    Args:
        contrasts: coefficients x contrasts matrix, index matching fit.coef_names
    """
    c = contrasts.loc[fit.coef_names].to_numpy(dtype=float)

    coefficients = fit.coefficients @ c
    cov = c.T @ fit.cov_coefficients @ c
    # Complete data: the unscaled variance is the same for every gene
    stdev_unscaled = np.tile(np.sqrt(np.diag(cov)), (len(fit.genes), 1))

    return replace(
        fit,
        coef_names=list(contrasts.columns),
        coefficients=coefficients,
        stdev_unscaled=stdev_unscaled,
        cov_coefficients=cov,
    )


def trigamma_inverse(x):
    """Solve trigamma(y) = x for y by Newton iteration."""
    x = np.asarray(x, dtype=float)
    scalar = x.ndim == 0
    x = np.atleast_1d(x)
    y = np.empty_like(x)

    large = x > 1e7
    small = x < 1e-6
    y[large] = 1.0 / np.sqrt(x[large])
    y[small] = 1.0 / x[small]

    mid = ~(large | small)
    if mid.any():
        xm = x[mid]
        ym = 0.5 + 1.0 / xm
        for _ in range(50):
            tri = special.polygamma(1, ym)
            dif = tri * (1 - tri / xm) / special.polygamma(2, ym)
            ym = ym + dif
            if np.max(-dif / ym) < 1e-8:
                break
        else:
            logger.warning("trigamma_inverse: iteration limit exceeded")
        y[mid] = ym

    return float(y[0]) if scalar else y


def fit_f_dist(s2: np.ndarray, df: np.ndarray) -> Tuple[float, float]:
    """
    Moment estimation of the scaled F prior for the sample variances.

    Returns:
        (s2_prior, df_prior); df_prior is inf when there is no evidence of
        variance heterogeneity between genes.
    """
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)

    ok = np.isfinite(s2) & np.isfinite(df) & (df > 1e-15)
    s2 = s2[ok]
    df = df[ok]
    n = len(s2)
    if n == 0:
        raise ValueError("No usable residual variances")
    if n == 1:
        return float(s2[0]), 0.0

    s2 = np.maximum(s2, 0)
    m = np.median(s2)
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero: eBayes unreliable")
        m = 1.0
    elif (s2 == 0).any():
        logger.warning("Zero sample variances detected, have been offset away from zero")
    s2 = np.maximum(s2, 1e-5 * m)

    z = np.log(s2)
    e = z - special.digamma(df / 2) + np.log(df / 2)
    emean = e.mean()
    evar = ((e - emean) ** 2).sum() / (n - 1)
    evar = evar - special.polygamma(1, df / 2).mean()

    if evar > 0:
        df_prior = 2 * trigamma_inverse(evar)
        s2_prior = np.exp(emean + special.digamma(df_prior / 2) - np.log(df_prior / 2))
    else:
        # Pooled variance, the MLE of the scale when df_prior is infinite
        df_prior = np.inf
        s2_prior = s2.mean()

    return float(s2_prior), float(df_prior)


def squeeze_var(s2: np.ndarray, df: np.ndarray) -> Tuple[np.ndarray, float, float]:
    """
    Shrink gene-wise variances towards a common prior.

    Returns:
        (posterior variances, s2_prior, df_prior)
    """
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)
    s2_prior, df_prior = fit_f_dist(s2, df)

    if np.isinf(df_prior):
        s2_post = np.full_like(s2, s2_prior)
    else:
        s2_post = (df * s2 + df_prior * s2_prior) / (df + df_prior)

    return s2_post, s2_prior, df_prior


def _tmixture_vector(
    tstat: np.ndarray,
    stdev_unscaled: np.ndarray,
    df: np.ndarray,
    proportion: float,
    v0_lim: Optional[Tuple[float, float]] = None
) -> float:
    """Estimate the prior variance of the non-zero coefficients from the top t-statistics."""
    ok = np.isfinite(tstat)
    tstat = tstat[ok].copy()
    stdev_unscaled = stdev_unscaled[ok]
    df = np.broadcast_to(df, ok.shape)[ok]

    ngenes = len(tstat)
    if ngenes < 2:
        return np.nan

    # Put all t-statistics on the largest df
    max_df = df.max()
    lower = df < max_df
    if lower.any():
        tail_p = stats.t.cdf(tstat[lower], df[lower])
        tstat[lower] = stats.t.ppf(tail_p, max_df)

    ntarget = int(np.ceil(proportion / 2 * ngenes))
    if ntarget < 1:
        return np.nan

    p = max(ntarget / ngenes, proportion)
    tstat = np.abs(tstat)
    ttarget = np.quantile(tstat, (ngenes - ntarget) / (ngenes - 1))
    top = tstat >= ttarget
    tstat = tstat[top]
    v1 = stdev_unscaled[top] ** 2

    r = ntarget - stats.rankdata(tstat) + 1
    p0 = 2 * stats.t.sf(tstat, max_df)
    ptarget = ((r - 0.5) / 2 / ngenes - (1 - p) * p0) / p

    v0 = np.zeros_like(tstat)
    pos = ptarget > p0
    if pos.any():
        qtarget = -stats.t.ppf(ptarget[pos], max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / qtarget) ** 2 - 1)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])

    return float(v0.mean())


def ebayes(
    fit: LinearModelFit,
    proportion: float = 0.01,
    stdev_coef_lim: Tuple[float, float] = (0.1, 4.0)
) -> LinearModelFit:
    """
    Empirical Bayes moderation of the standard errors.

    Adds moderated t-statistics, two-sided p-values and B-statistics
    (log-odds of differential expression) for every coefficient.
    """
    s2 = fit.sigma ** 2
    s2_post, s2_prior, df_prior = squeeze_var(s2, fit.df_residual)

    df_pooled = fit.df_residual.sum()
    df_total = np.minimum(fit.df_residual + df_prior, df_pooled)

    t = fit.coefficients / fit.stdev_unscaled / np.sqrt(s2_post)[:, None]
    p_value = 2 * stats.t.sf(np.abs(t), df_total[:, None])

    # B-statistic
    var_prior_lim = (stdev_coef_lim[0] ** 2 / s2_prior, stdev_coef_lim[1] ** 2 / s2_prior)
    n_coef = fit.coefficients.shape[1]
    var_prior = np.array([
        _tmixture_vector(t[:, j], fit.stdev_unscaled[:, j], df_total, proportion, var_prior_lim)
        for j in range(n_coef)
    ])
    var_prior[np.isnan(var_prior)] = 1.0 / s2_prior

    r = (fit.stdev_unscaled ** 2 + var_prior[None, :]) / fit.stdev_unscaled ** 2
    t2 = t ** 2
    if df_prior > 1e6:
        kernel = t2 * (1 - 1 / r) / 2
    else:
        dft = df_total[:, None]
        kernel = (1 + dft) / 2 * np.log((t2 + dft) / (t2 / r + dft))
    lods = np.log(proportion / (1 - proportion)) - np.log(r) / 2 + kernel

    logger.debug(f"eBayes: s2_prior={s2_prior:.4g}, df_prior={df_prior:.4g}")

    return replace(
        fit,
        df_prior=df_prior,
        s2_prior=s2_prior,
        s2_post=s2_post,
        df_total=df_total,
        t=t,
        p_value=p_value,
        lods=lods,
    )


def top_table(fit: LinearModelFit, coef: int = 0, adjust: str = "fdr_bh") -> pd.DataFrame:
    """
    Table of results for one coefficient, in gene order.

    Columns follow limma's topTable: logFC, AveExpr, t, P.Value, adj.P.Val, B.
    """
    if fit.t is None:
        raise ValueError("Run ebayes() before top_table()")

    p_value = fit.p_value[:, coef]
    _, adj_p, _, _ = multipletests(p_value, method=adjust)

    table = pd.DataFrame({
        "logFC": fit.coefficients[:, coef],
        "AveExpr": fit.amean,
        "t": fit.t[:, coef],
        "P.Value": p_value,
        "adj.P.Val": adj_p,
        "B": fit.lods[:, coef],
    }, index=fit.genes)
    table.index.name = "gene_id"
    return table


def two_group_design(samples_a: Sequence[str], samples_b: Sequence[str]) -> pd.DataFrame:
    """One indicator column per group, no intercept."""
    samples = list(samples_a) + list(samples_b)
    design = pd.DataFrame({
        "groupA": [1.0] * len(samples_a) + [0.0] * len(samples_b),
        "groupB": [0.0] * len(samples_a) + [1.0] * len(samples_b),
    }, index=samples)
    return design


def two_group_limma(
    expr: pd.DataFrame,
    samples_a: Sequence[str],
    samples_b: Sequence[str],
    adjust: str = "fdr_bh"
) -> pd.DataFrame:
    """
    Moderated t-test of group A - group B for every gene.

    Args:
        expr: genes x samples (normalized, log-scale)
        samples_a: column names of group A
        samples_b: column names of group B

    Returns:
        topTable-style DataFrame indexed by gene
    """
    if len(samples_a) < 2 or len(samples_b) < 2:
        raise ValueError("Each group needs at least 2 samples")
    overlap = set(samples_a) & set(samples_b)
    if overlap:
        raise ValueError(f"Samples assigned to both groups: {sorted(overlap)[:5]}")

    design = two_group_design(samples_a, samples_b)
    contrast = pd.DataFrame({"A-B": [1.0, -1.0]}, index=["groupA", "groupB"])

    fit = lm_fit(expr[design.index], design)
    fit = contrasts_fit(fit, contrast)
    fit = ebayes(fit)
    return top_table(fit, adjust=adjust)


def split_by_direction(
    table: pd.DataFrame,
    pvalue_cutoff: float = 0.05,
    log2fc_cutoff: float = 0.0
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Retain genes below the adjusted p-value cutoff and split them by the sign of t.

    Returns:
        (up, down) tables, each sorted by adjusted p-value
    """
    significant = table[
        (table["adj.P.Val"] < pvalue_cutoff) &
        (table["logFC"].abs() > log2fc_cutoff)
    ]
    up = significant[significant["t"] > 0].sort_values("adj.P.Val")
    down = significant[significant["t"] < 0].sort_values("adj.P.Val")
    return up, down
