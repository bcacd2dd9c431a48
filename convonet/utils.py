"""
Utility Functions
=================

Helpers around the engine:
- Sample sources (MNIST IDX files, class-per-folder images, synthetic data)
- Shuffling and batching
- Label encoding and metrics
- Model summary table
"""

import struct
import warnings
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .matrix import Matrix


SHUFFLE_SEED = 4321


@dataclass(frozen=True)
class Sample:
    """One labeled input: a feature Matrix and its class index."""

    x: Matrix
    label: int


# ============================================================================
# Sample sources
# ============================================================================

def load_mnist(data_dir='mnist_dataset', subset_size=None, normalize=True):
    """
    Load MNIST from IDX binary files as lists of Samples.

    Args:
        data_dir: Path to folder containing MNIST files
        subset_size: Tuple (train_size, test_size) for subset, None for full
        normalize: Scale pixel values to [0, 1]

    Returns:
        (train_samples, test_samples)
    """
    data_dir = Path(data_dir)

    X_train = _load_idx_images(_find_file(data_dir, 'train-images'))
    y_train = _load_idx_labels(_find_file(data_dir, 'train-labels'))
    X_test = _load_idx_images(_find_file(data_dir, 't10k-images'))
    y_test = _load_idx_labels(_find_file(data_dir, 't10k-labels'))

    if subset_size is not None:
        train_size, test_size = subset_size
        X_train, y_train = X_train[:train_size], y_train[:train_size]
        X_test, y_test = X_test[:test_size], y_test[:test_size]

    scale = 255.0 if normalize else 1.0
    train = [Sample(Matrix.from_array(img / scale), int(label))
             for img, label in zip(X_train.astype(np.float64), y_train)]
    test = [Sample(Matrix.from_array(img / scale), int(label))
            for img, label in zip(X_test.astype(np.float64), y_test)]

    print(f"Loaded MNIST: {len(train)} training, {len(test)} test samples")
    return train, test


def _find_file(data_dir, prefix):
    """Find IDX file with given prefix."""
    for ext in ['.idx3-ubyte', '.idx1-ubyte', '-idx3-ubyte', '-idx1-ubyte', '']:
        candidate = data_dir / f"{prefix}{ext}"
        if candidate.is_file():
            return candidate

    for file in data_dir.rglob('*'):
        if file.is_file() and prefix in file.name:
            return file

    raise FileNotFoundError(f"Could not find MNIST file with prefix '{prefix}' in {data_dir}")


def _load_idx_images(filepath):
    """Load images from IDX file."""
    with open(filepath, 'rb') as f:
        magic, num_images, rows, cols = struct.unpack('>IIII', f.read(16))
        if magic != 2051:
            raise ValueError(f"Invalid magic number {magic} (expected 2051)")
        data = np.frombuffer(f.read(), dtype=np.uint8)
    return data.reshape(num_images, rows, cols)


def _load_idx_labels(filepath):
    """Load labels from IDX file."""
    with open(filepath, 'rb') as f:
        magic, num_labels = struct.unpack('>II', f.read(8))
        if magic != 2049:
            raise ValueError(f"Invalid magic number {magic} (expected 2049)")
        return np.frombuffer(f.read(), dtype=np.uint8)


IMAGE_SUFFIXES = ('.png', '.jpg', '.jpeg', '.bmp', '.gif', '.tif', '.tiff')


def load_image_data(filepath):
    """
    Read one image file as a grayscale Matrix with cells in [0, 1].

    Color images are averaged over their RGB channels (alpha is ignored).
    """
    import matplotlib.image as mpimg

    img = np.asarray(mpimg.imread(filepath), dtype=np.float64)
    # PNGs come back as floats in [0, 1], other formats as 0-255 integers
    if img.max() > 1.0:
        img = img / 255.0
    if img.ndim == 3:
        img = img[:, :, :3].mean(axis=2)
    return Matrix.from_array(img)


def load_image_folder(parent_dir, num_classes, num_each_class=None):
    """
    Load images laid out as parent_dir/<class index>/<image files>.

    Args:
        parent_dir: Folder holding subfolders '0', '1', ..., one per class
        num_classes: Number of class subfolders to read
        num_each_class: Maximum files per class (None for all)

    Returns:
        List of Samples, grouped by class (shuffle before training)
    """
    parent_dir = Path(parent_dir)
    samples = []

    for k in range(num_classes):
        class_dir = parent_dir / str(k)
        if not class_dir.is_dir():
            raise FileNotFoundError(f"Not a directory: {class_dir}")

        files = sorted(p for p in class_dir.iterdir()
                       if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES)
        if num_each_class is not None:
            files = files[:num_each_class]

        for path in files:
            samples.append(Sample(load_image_data(path), k))

    print(f"Loaded {len(samples)} images from {parent_dir} ({num_classes} classes)")
    return samples


def make_separable_samples(n_samples, rows=4, cols=4, num_classes=2, noise=0.1, seed=42):
    """
    Synthetic, linearly separable data.

    Each class gets a random template image; a sample is its class template
    plus Gaussian noise. With small noise the classes separate cleanly.

    Args:
        n_samples: Number of samples (classes are balanced round-robin)
        rows, cols: Sample matrix shape
        num_classes: Number of classes
        noise: Standard deviation of the per-pixel noise
        seed: Random seed

    Returns:
        List of Samples
    """
    rng = np.random.default_rng(seed)
    templates = rng.uniform(-1.0, 1.0, size=(num_classes, rows * cols))

    samples = []
    for n in range(n_samples):
        label = n % num_classes
        pixels = templates[label] + noise * rng.standard_normal(rows * cols)
        samples.append(Sample(Matrix(rows, cols, pixels), label))
    return samples


# ============================================================================
# Shuffling and batching
# ============================================================================

def shuffle_samples(samples, seed=SHUFFLE_SEED):
    """Return a shuffled copy of the sample list (deterministic for a given seed)."""
    samples = list(samples)
    order = np.random.default_rng(seed).permutation(len(samples))
    return [samples[i] for i in order]


def create_batches(samples, batch_size, drop_last=True):
    """
    Yield consecutive batches of samples.

    Args:
        samples: Sequence of Samples
        batch_size: Batch size
        drop_last: Skip a final batch smaller than batch_size

    Yields:
        Lists of Samples
    """
    n_samples = len(samples)
    for start in range(0, n_samples, batch_size):
        batch = samples[start:start + batch_size]
        if drop_last and len(batch) < batch_size:
            return
        yield list(batch)


def take_samples(samples, total, name='samples'):
    """First `total` samples, warning if fewer are available."""
    samples = list(samples)
    if total is None or total <= 0:
        return samples
    if total > len(samples):
        warnings.warn(f"Requested {total} {name}, only {len(samples)} available")
        return samples
    return samples[:total]


# ============================================================================
# Labels and metrics
# ============================================================================

def one_hot_encode(labels, num_classes=None):
    """One identity row per label, shape (N, num_classes); num_classes defaults to max + 1."""
    labels = np.asarray(labels, dtype=int)
    if num_classes is None:
        num_classes = int(labels.max()) + 1
    return np.eye(num_classes)[labels]


def accuracy_score(y_true, y_pred):
    """Fraction of matching labels."""
    y_true = np.asarray(y_true)
    y_pred = np.asarray(y_pred)
    if y_true.size == 0:
        return 0.0
    return float(np.mean(y_true == y_pred))


def confusion_matrix(y_true, y_pred, num_classes=None):
    """
    Confusion matrix with rows = actual class, columns = predicted class.

    Returns:
        Integer array, shape (num_classes, num_classes)
    """
    y_true = np.asarray(y_true, dtype=int)
    y_pred = np.asarray(y_pred, dtype=int)

    if num_classes is None:
        num_classes = max(y_true.max(), y_pred.max()) + 1

    cm = np.zeros((num_classes, num_classes), dtype=int)
    np.add.at(cm, (y_true, y_pred), 1)
    return cm


def get_model_summary(net):
    """
    Layer table for a configured ConvoNet.

    Returns:
        Summary string
    """
    lines = []
    lines.append("=" * 70)
    lines.append(f"{'Layer':<12} {'Type':<10} {'Output':<22} {'Params':>12}")
    lines.append("=" * 70)

    total_params = 0
    for layer, output_shape in net.layer_shapes():
        n_params = layer.num_params()
        total_params += n_params
        lines.append(f"{layer.layer_id:<12} {layer.layer_type:<10} {output_shape:<22} {n_params:>12,}")

    lines.append("=" * 70)
    lines.append(f"Total trainable parameters: {total_params:,}")
    lines.append("=" * 70)
    return '\n'.join(lines)
