"""
PyTorch ConvoNet Implementation
===============================

The ConvoNet architecture built from torch modules.
This serves as a comparison to the NumPy engine.
"""

from .convonet_torch import ConvoNetTorch, evaluate_torch_model, samples_to_tensors

__all__ = ['ConvoNetTorch', 'evaluate_torch_model', 'samples_to_tensors']
