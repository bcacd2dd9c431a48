"""
Weight Update and Learning-Rate Schedules
=========================================

Gradient descent with momentum and L2 weight decay, shared by every trainable
parameter in the network (filters, internal weights, output weights):

    dw = -eta * dL/dW
    v  = mu * v + dw
    W  = W * (1 - lambda) + v

The learning rate eta follows a schedule indexed by the number of training
samples seen so far:
- Triangle Decay: triangular wave between min_rate and a peak that steps
  down by decay_per_step every step_count samples
- Step Decay: the peak alone (staircase from max_rate down to min_rate)

References:
    https://www.jeremyjordan.me/nn-learning-rate/
"""

import math

from . import ops
from .errors import InvalidConfigurationError


def update_weight_matrix(dl_dw, eta, w, v, mu, one_minus_lambda):
    """
    Momentum + L2 update of w and its velocity v, both in place.

    Args:
        dl_dw: Batch-averaged gradient dL/dW
        eta: Learning rate
        w: Weight matrix (updated in place)
        v: Velocity matrix, same shape as w (updated in place)
        mu: Momentum coefficient
        one_minus_lambda: 1 - L2 coefficient

    Raises:
        NumericInstabilityError: the updated weights contain NaN/Inf
    """
    dw = ops.mul_constant(dl_dw, -eta)
    ops.mul_constant_inplace(v, mu)
    ops.add_inplace(v, dw)
    ops.mul_constant_inplace(w, one_minus_lambda)
    ops.add_inplace(w, v)
    w.check_nan("update_weight_matrix")


# ============================================================================
# Learning Rate Functions
# ============================================================================

def triangle_fn(half_cycle, count):
    """
    Triangular wave rising 0 -> 1 over half_cycle counts, then back to 0.

    Example:
        >>> [triangle_fn(100, c) for c in (0, 50, 100, 150, 200)]
        [0.0, 0.5, 1.0, 0.5, 0.0]
    """
    ratio = count / half_cycle
    cycle = math.floor(1 + 0.5 * ratio)
    return max(0.0, 1.0 - abs(ratio - 2 * cycle + 1))


def decay_step_fn(min_y, max_y, decay, step_size, count):
    """Staircase: max_y minus decay for every full step_size counts, floored at min_y."""
    n_steps = count // step_size
    return max(min_y, max_y - decay * n_steps)


def decay_triangle_fn(min_y, max_y, min_peak, decay, step_size, count):
    """
    Triangular wave between min_y and a decaying peak.

    One full triangle spans step_size counts; the peak is
    decay_step_fn(min_y, max_y, decay, step_size, count).

    min_peak is accepted for call compatibility with the rate model; the
    peak floor is min_y.
    """
    tri = triangle_fn(max(step_size // 2, 1), count)
    peak = decay_step_fn(min_y, max_y, decay, step_size, count)
    return min_y + (peak - min_y) * tri


def damped_sine_fn(decay, half_cycle, count):
    """|sin| wave with period 2*half_cycle counts under an exp(-decay*count) envelope."""
    envelope = math.exp(-decay * count)
    theta = count / (2 * half_cycle)
    return envelope * abs(math.sin(math.pi * theta))


# ============================================================================
# Learning Rate Schedulers
# ============================================================================

def triangle_decay(min_rate, max_rate, step_count, decay_per_step):
    """Triangle Decay schedule: scheduler(count) -> eta."""
    min_peak = 2 * min_rate

    def scheduler(count):
        return decay_triangle_fn(min_rate, max_rate, min_peak, decay_per_step, step_count, count)
    return scheduler


def step_decay(min_rate, max_rate, step_count, decay_per_step):
    """Step Decay schedule: scheduler(count) -> eta."""
    def scheduler(count):
        return decay_step_fn(min_rate, max_rate, decay_per_step, step_count, count)
    return scheduler


def damped_sine(min_rate, max_rate, step_count, decay_per_step):
    """
    Damped Sine schedule: min_rate + (max_rate - min_rate) * damped_sine_fn.

    step_count is the half cycle and decay_per_step the envelope decay rate.
    """
    def scheduler(count):
        return min_rate + (max_rate - min_rate) * damped_sine_fn(decay_per_step, step_count, count)
    return scheduler


def constant_rate(min_rate, max_rate, step_count, decay_per_step):
    """No decay: always max_rate."""
    def scheduler(count):
        return max_rate
    return scheduler


LR_SCHEDULERS = {
    'triangle_decay': triangle_decay,
    'step_decay': step_decay,
    'damped_sine': damped_sine,
    'constant': constant_rate,
}

# schedules accepted for training runs
TRAINING_SCHEDULERS = ('triangle_decay', 'step_decay')


def _scheduler_key(name):
    return name.strip().lower().replace('-', '_').replace(' ', '_')


def get_rate_schedule(rate_model, allowed=None):
    """
    Build scheduler(count) -> eta from an EtaModel.

    Args:
        rate_model: EtaModel (rate_fn, min_rate, max_rate, step_count,
                    decay_per_step)
        allowed: Optional iterable of registry keys to accept

    Raises:
        InvalidConfigurationError: unknown or disallowed rate function

    Example:
        >>> from convonet.config import EtaModel
        >>> eta = get_rate_schedule(EtaModel('Step Decay', 0.01, 0.1, 100, 0.02))
        >>> round(eta(250), 4)
        0.06
    """
    key = _scheduler_key(rate_model.rate_fn or '')
    keys = tuple(allowed) if allowed is not None else tuple(LR_SCHEDULERS)
    if key not in LR_SCHEDULERS or key not in keys:
        raise InvalidConfigurationError(
            f"Invalid rate function '{rate_model.rate_fn}'. Available: {', '.join(keys)}")
    if rate_model.step_count <= 0:
        raise InvalidConfigurationError(
            f"Rate step count must be positive, got {rate_model.step_count}")

    return LR_SCHEDULERS[key](rate_model.min_rate, rate_model.max_rate,
                              rate_model.step_count, rate_model.decay_per_step)
