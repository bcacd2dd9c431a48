"""
Unit Tests for Utility Functions
================================

Tests for:
- MNIST IDX and image-folder loaders
- Shuffling, batching and sample counts
- Label encoding and metrics
"""

import struct

import matplotlib
matplotlib.use('Agg')
import matplotlib.image as mpimg

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from convonet.errors import DimensionMismatchError
from convonet.losses import one_hot_column
from convonet.utils import (Sample, load_mnist, load_image_data, load_image_folder,
                            make_separable_samples, shuffle_samples, create_batches,
                            take_samples, one_hot_encode, accuracy_score, confusion_matrix)


def write_idx_images(path, images):
    with open(path, 'wb') as f:
        f.write(struct.pack('>IIII', 2051, *images.shape))
        f.write(images.astype(np.uint8).tobytes())


def write_idx_labels(path, labels):
    with open(path, 'wb') as f:
        f.write(struct.pack('>II', 2049, len(labels)))
        f.write(np.asarray(labels, dtype=np.uint8).tobytes())


class TestLoaders:
    """Tests for the sample sources."""

    def setup_method(self):
        np.random.seed(42)

    def test_load_mnist(self, tmp_path):
        train_images = np.random.randint(0, 256, size=(6, 5, 5))
        test_images = np.random.randint(0, 256, size=(3, 5, 5))
        write_idx_images(tmp_path / 'train-images-idx3-ubyte', train_images)
        write_idx_labels(tmp_path / 'train-labels-idx1-ubyte', [0, 1, 2, 3, 4, 5])
        write_idx_images(tmp_path / 't10k-images-idx3-ubyte', test_images)
        write_idx_labels(tmp_path / 't10k-labels-idx1-ubyte', [7, 8, 9])

        train, test = load_mnist(tmp_path, subset_size=(4, 2))

        assert len(train) == 4
        assert len(test) == 2
        assert train[3].label == 3
        assert test[1].label == 8
        np.testing.assert_allclose(train[0].x.to_array(), train_images[0] / 255.0)

    def test_load_mnist_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_mnist(tmp_path)

    def test_bad_magic_number(self, tmp_path):
        with open(tmp_path / 'train-images-idx3-ubyte', 'wb') as f:
            f.write(struct.pack('>IIII', 1234, 1, 2, 2))
            f.write(bytes(4))
        with pytest.raises(ValueError, match="magic"):
            load_mnist(tmp_path)

    def test_load_image_data(self, tmp_path):
        img = np.random.rand(6, 4)
        path = tmp_path / 'img.png'
        mpimg.imsave(path, img, cmap='gray', vmin=0.0, vmax=1.0)

        x = load_image_data(path)

        assert x.shape == (6, 4)
        np.testing.assert_allclose(x.to_array(), img, atol=2.0 / 255)

    def test_load_image_folder(self, tmp_path):
        for k in range(2):
            (tmp_path / str(k)).mkdir()
            for n in range(3):
                mpimg.imsave(tmp_path / str(k) / f'{n}.png', np.random.rand(4, 4), cmap='gray')
        (tmp_path / '0' / 'notes.txt').write_text('not an image')

        samples = load_image_folder(tmp_path, num_classes=2, num_each_class=2)

        assert len(samples) == 4
        assert [s.label for s in samples] == [0, 0, 1, 1]
        assert all(s.x.shape == (4, 4) for s in samples)

    def test_load_image_folder_missing_class(self, tmp_path):
        (tmp_path / '0').mkdir()
        with pytest.raises(FileNotFoundError):
            load_image_folder(tmp_path, num_classes=2)

    def test_separable_samples(self):
        samples = make_separable_samples(9, 3, 5, num_classes=3, seed=0)

        assert [s.label for s in samples] == [0, 1, 2] * 3
        assert samples[0].x.shape == (3, 5)
        # same seed, same data
        again = make_separable_samples(9, 3, 5, num_classes=3, seed=0)
        assert samples[4].x == again[4].x


class TestBatching:
    """Tests for shuffling, batching and sample counts."""

    def setup_method(self):
        self.samples = [Sample(None, n) for n in range(10)]

    def test_shuffle_deterministic(self):
        a = shuffle_samples(self.samples, seed=4321)
        b = shuffle_samples(self.samples, seed=4321)
        c = shuffle_samples(self.samples, seed=4322)

        assert [s.label for s in a] == [s.label for s in b]
        assert [s.label for s in a] != [s.label for s in c]
        assert sorted(s.label for s in a) == list(range(10))

    def test_shuffle_returns_copy(self):
        shuffle_samples(self.samples)
        assert [s.label for s in self.samples] == list(range(10))

    def test_batches_drop_last(self):
        batches = list(create_batches(self.samples, 4))
        assert [len(b) for b in batches] == [4, 4]

    def test_batches_keep_last(self):
        batches = list(create_batches(self.samples, 4, drop_last=False))
        assert [len(b) for b in batches] == [4, 4, 2]
        assert batches[-1][-1].label == 9

    def test_take_samples(self):
        assert len(take_samples(self.samples, 3)) == 3
        assert len(take_samples(self.samples, 0)) == 10
        assert len(take_samples(self.samples, None)) == 10

    def test_take_too_many(self):
        with pytest.warns(UserWarning, match="only 10 available"):
            taken = take_samples(self.samples, 25, 'training samples')
        assert len(taken) == 10


class TestMetrics:
    """Tests for label encoding and metrics."""

    def test_one_hot_encode(self):
        one_hot = one_hot_encode([2, 0, 1])
        np.testing.assert_array_equal(one_hot, [[0, 0, 1], [1, 0, 0], [0, 1, 0]])

    def test_one_hot_fixed_width(self):
        assert one_hot_encode([1], num_classes=4).shape == (1, 4)

    def test_one_hot_column(self):
        """The loss target is the matching one-hot row as a column."""
        col = one_hot_column(2, 4)
        assert col.shape == (4, 1)
        np.testing.assert_array_equal(col.data, one_hot_encode([2], 4)[0])

    def test_one_hot_column_out_of_range(self):
        with pytest.raises(DimensionMismatchError):
            one_hot_column(3, 3)

    def test_accuracy_score(self):
        assert accuracy_score([0, 1, 2, 2], [0, 1, 1, 2]) == 0.75
        assert accuracy_score([], []) == 0.0

    def test_confusion_matrix(self):
        """Rows are actual classes, columns predicted classes."""
        cm = confusion_matrix([0, 0, 1, 2, 2], [0, 1, 1, 2, 0], num_classes=3)

        expected = np.array([[1, 1, 0],
                             [0, 1, 0],
                             [1, 0, 1]])
        np.testing.assert_array_equal(cm, expected)
        assert cm.sum() == 5
        assert np.trace(cm) == 3


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
