"""
Visualization Utilities
=======================

Plots for:
- Training progress (accuracy, batch accuracy and learning rate per batch)
- Learning-rate schedules
- Confusion matrix
- Convolution filters
- Feature maps of the convolution stages
"""

import numpy as np
import matplotlib.pyplot as plt

from .matrix import Matrix


def _finish(fig, save_path, what, show):
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"{what} saved to {save_path}")

    if show:
        plt.show()
    return fig


def _as_array(m):
    return m.to_array() if isinstance(m, Matrix) else np.asarray(m)


def plot_training_history(history, figsize=(14, 5), save_path=None, show=True):
    """
    Plot training history per batch.

    Args:
        history: NetResult.history ('accuracy', 'batch_accuracy', 'eta')
        figsize: Figure size
        save_path: Path to save figure
        show: Call plt.show()
    """
    fig, axes = plt.subplots(1, 2, figsize=figsize)

    batches = range(1, len(history['accuracy']) + 1)

    # Accuracy plot
    axes[0].plot(batches, history['accuracy'], 'b-', label='Running Accuracy', linewidth=2)
    if history.get('batch_accuracy'):
        axes[0].plot(batches, history['batch_accuracy'], 'r-', label='Batch Accuracy',
                     linewidth=1, alpha=0.6)
    axes[0].set_xlabel('Batch', fontsize=12)
    axes[0].set_ylabel('Accuracy', fontsize=12)
    axes[0].set_title('Training Accuracy', fontsize=14)
    axes[0].legend(fontsize=10)
    axes[0].grid(True, alpha=0.3)

    # Learning rate plot
    axes[1].plot(batches, history.get('eta', []), 'g-', linewidth=2)
    axes[1].set_xlabel('Batch', fontsize=12)
    axes[1].set_ylabel('Eta', fontsize=12)
    axes[1].set_title('Learning Rate', fontsize=14)
    axes[1].grid(True, alpha=0.3)

    return _finish(fig, save_path, "Training history plot", show)


def plot_rate_schedule(schedule, total_samples, batch_size=1, figsize=(8, 5),
                       save_path=None, show=True, title='Learning Rate Schedule'):
    """
    Plot eta against samples completed.

    Args:
        schedule: scheduler(count) -> eta (see optimizers.get_rate_schedule)
        total_samples: Last sample count to plot
        batch_size: Spacing of the evaluated counts
    """
    counts = np.arange(0, total_samples + 1, max(batch_size, 1))
    etas = [schedule(int(c)) for c in counts]

    fig, ax = plt.subplots(figsize=figsize)
    ax.plot(counts, etas, 'b-', linewidth=2)
    ax.set_xlabel('Samples Completed', fontsize=12)
    ax.set_ylabel('Eta', fontsize=12)
    ax.set_title(title, fontsize=14)
    ax.grid(True, alpha=0.3)

    return _finish(fig, save_path, "Rate schedule plot", show)


def visualize_confusion_matrix(cm, class_names=None, figsize=(10, 8), save_path=None, show=True):
    """
    Visualize confusion matrix.

    Args:
        cm: Confusion matrix (array or NetResult.summary_results), rows = actual
        class_names: List of class names
        figsize: Figure size
        save_path: Path to save figure
    """
    cm = _as_array(cm).astype(int)
    fig, ax = plt.subplots(figsize=figsize)

    im = ax.imshow(cm, interpolation='nearest', cmap=plt.cm.Blues)
    ax.figure.colorbar(im, ax=ax)

    if class_names is None:
        class_names = [str(i) for i in range(len(cm))]

    ax.set(xticks=np.arange(len(class_names)),
           yticks=np.arange(len(class_names)),
           xticklabels=class_names,
           yticklabels=class_names,
           ylabel='Actual',
           xlabel='Predicted',
           title='Confusion Matrix')

    plt.setp(ax.get_xticklabels(), rotation=45, ha='right', rotation_mode='anchor')

    thresh = cm.max() / 2.
    for i in range(len(class_names)):
        for j in range(len(class_names)):
            ax.text(j, i, format(cm[i, j], 'd'),
                    ha='center', va='center',
                    color='white' if cm[i, j] > thresh else 'black')

    return _finish(fig, save_path, "Confusion matrix", show)


def visualize_filters(filter_list, max_filters=32, figsize=(12, 8), save_path=None, show=True):
    """
    Visualize convolution filters.

    Args:
        filter_list: filter_list[k][i], the filter from input map i to output
                     map k (ConvoLayer.filters or ConvoPoolFitParams.filter_list)
        max_filters: Maximum number of output maps to display
    """
    n_filters = min(len(filter_list), max_filters)

    n_cols = int(np.ceil(np.sqrt(n_filters)))
    n_rows = int(np.ceil(n_filters / n_cols))

    fig, axes = plt.subplots(n_rows, n_cols, figsize=figsize)
    axes = np.array(axes).flatten()

    for k in range(n_filters):
        # average across input maps
        filter_img = np.mean([_as_array(f) for f in filter_list[k]], axis=0)
        filter_img = (filter_img - filter_img.min()) / (filter_img.max() - filter_img.min() + 1e-8)

        axes[k].imshow(filter_img, cmap='gray')
        axes[k].set_title(f'Filter {k}', fontsize=8)
        axes[k].axis('off')

    for k in range(n_filters, len(axes)):
        axes[k].axis('off')

    plt.suptitle('Convolution Filters', fontsize=14)
    return _finish(fig, save_path, "Filters visualization", show)


def visualize_feature_maps(feature_maps, max_maps=16, figsize=(12, 12), save_path=None, show=True):
    """
    Visualize the feature maps of one convolution stage.

    Args:
        feature_maps: List of Matrices (one entry of ConvoNet.get_feature_maps)
        max_maps: Maximum number of feature maps to display
    """
    n_maps = min(len(feature_maps), max_maps)
    n_cols = int(np.ceil(np.sqrt(n_maps)))
    n_rows = int(np.ceil(n_maps / n_cols))

    fig, axes = plt.subplots(n_rows, n_cols, figsize=figsize)
    axes = np.array(axes).flatten()

    for i in range(n_maps):
        axes[i].imshow(_as_array(feature_maps[i]), cmap='viridis')
        axes[i].set_title(f'Map {i}', fontsize=8)
        axes[i].axis('off')

    for i in range(n_maps, len(axes)):
        axes[i].axis('off')

    plt.suptitle('Feature Maps', fontsize=14)
    return _finish(fig, save_path, "Feature maps", show)
