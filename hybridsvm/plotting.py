"""
Diagnostic plots for the hybrid SVM pipeline.

Figures are written with the Agg backend so they work on compute nodes
without a display.
"""

import os
import numpy as np

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt


# =============================================================================
# LEARNING-RATE SWEEP
# =============================================================================

def plot_learning_rate_sweep(results, selected, output_dir, logger,
                             filename="learning_rate_sweep.png"):
    """
    Plot real loss against candidate learning rate.

    Creates a 2-panel figure:
    1. Real (final-model) hinge loss per candidate, log-log
    2. Running loss accumulated during the epoch, for comparison

    Unstable or unevaluated candidates are drawn as crosses on the x axis.
    """
    os.makedirs(output_dir, exist_ok=True)

    rates = np.array([r.learning_rate for r in results])
    losses = np.array([r.loss for r in results])
    running = np.array([r.running_loss for r in results])
    valid = np.array([not r.is_sentinel for r in results])

    fig, axes = plt.subplots(1, 2, figsize=(11, 4))

    ax = axes[0]
    if np.any(valid):
        ax.loglog(rates[valid], np.maximum(losses[valid], 1e-300), 'bo-', linewidth=1.5, label='real loss')
    if np.any(~valid):
        ymin = np.min(losses[valid]) if np.any(valid) else 1.0
        ax.plot(rates[~valid], np.full(np.sum(~valid), max(ymin, 1e-300)), 'rx', label='unstable / empty')
    ax.axvline(selected.learning_rate, color='g', linestyle='--', label=f'selected {selected.learning_rate:.0e}')
    ax.set_xlabel('Learning rate')
    ax.set_ylabel('Hinge loss (final model)')
    ax.set_title('Partition-local tuning')
    ax.grid(True, which='both', alpha=0.3)
    ax.legend()

    ax = axes[1]
    if np.any(valid):
        ax.loglog(rates[valid], np.maximum(losses[valid], 1e-300), 'bo-', label='real loss')
        ax.loglog(rates[valid], np.maximum(running[valid], 1e-300), 's--', color='orange', label='running loss')
    ax.set_xlabel('Learning rate')
    ax.set_title('Real vs running loss')
    ax.grid(True, which='both', alpha=0.3)
    ax.legend()

    plt.tight_layout()
    filepath = os.path.join(output_dir, filename)
    plt.savefig(filepath, dpi=150)
    plt.close(fig)

    logger.info(f"Saved learning-rate sweep plot to {filepath}")
    return filepath
