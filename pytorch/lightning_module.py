"""
PyTorch Lightning Module for ConvoNet
=====================================

Baseline training of the torch reference network with PyTorch Lightning.
Training follows the NumPy engine's recipe:
- Negative log-likelihood of the output activations
- SGD with momentum mu and weight decay lambda
- The same learning-rate schedule, evaluated at samples completed
"""

import torch
import torch.nn.functional as F
import pytorch_lightning as pl
from pytorch_lightning.callbacks import ModelCheckpoint
from torch.utils.data import DataLoader, TensorDataset

from convonet.optimizers import get_rate_schedule

from .convonet_torch import ConvoNetTorch, samples_to_tensors


class ConvoNetLightningModule(pl.LightningModule):
    """
    PyTorch Lightning module for ConvoNet training.

    Example:
        >>> from pytorch_lightning import Trainer
        >>>
        >>> model = ConvoNetLightningModule(config)
        >>> trainer = Trainer(max_epochs=10)
        >>> trainer.fit(model, train_dataloader, val_dataloader)
    """

    def __init__(self, config, fit_params=None, epsilon=1e-15):
        """
        Initialize Lightning module.

        Args:
            config: NetConfig (architecture, batch size, lambda, mu, eta schedule)
            fit_params: Optional FitParams to start from
            epsilon: Lower clip for ln(p) in the loss
        """
        super().__init__()

        self.config = config
        self.epsilon = epsilon
        self.model = ConvoNetTorch(config).double()
        if fit_params is not None:
            self.model.load_fit_params(fit_params)
        self.rate_schedule = get_rate_schedule(config.back_prop_config.rate_model)

    def forward(self, x):
        """Forward pass."""
        return self.model(x)

    def _loss(self, probs, y):
        return F.nll_loss(torch.log(torch.clamp(probs, min=self.epsilon)), y)

    def _step(self, batch, stage):
        x, y = batch
        probs = self(x)
        loss = self._loss(probs, y)

        preds = torch.argmax(probs, dim=1)
        acc = (preds == y).double().mean()

        self.log(f'{stage}_loss', loss, prog_bar=True)
        self.log(f'{stage}_acc', acc, prog_bar=True)
        return loss

    def training_step(self, batch, batch_idx):
        """Training step."""
        return self._step(batch, 'train')

    def validation_step(self, batch, batch_idx):
        """Validation step."""
        return self._step(batch, 'val')

    def test_step(self, batch, batch_idx):
        """Test step."""
        return self._step(batch, 'test')

    def configure_optimizers(self):
        """SGD with momentum; lr = schedule(samples completed) per batch."""
        bp = self.config.back_prop_config
        optimizer = torch.optim.SGD(self.parameters(), lr=1.0, momentum=bp.mu,
                                    weight_decay=bp.lambda_)

        batch_size = bp.batch_size
        scheduler = torch.optim.lr_scheduler.LambdaLR(
            optimizer, lr_lambda=lambda step: self.rate_schedule(step * batch_size))

        return {
            'optimizer': optimizer,
            'lr_scheduler': {
                'scheduler': scheduler,
                'interval': 'step'
            }
        }

    def predict_step(self, batch, batch_idx):
        """Prediction step."""
        x, _ = batch if isinstance(batch, (tuple, list)) else (batch, None)
        return self(x)


def train_with_lightning(config, train_samples, val_samples=None, max_epochs=1,
                         checkpoint_dir='checkpoints', fit_params=None):
    """
    Train the torch reference network with PyTorch Lightning.

    Args:
        config: NetConfig
        train_samples: Training Samples
        val_samples: Optional validation Samples
        max_epochs: Maximum epochs
        checkpoint_dir: Directory for checkpoints
        fit_params: Optional FitParams to start from

    Returns:
        Trained model and trainer
    """
    batch_size = config.back_prop_config.batch_size
    train_loader = DataLoader(TensorDataset(*samples_to_tensors(train_samples)),
                              batch_size=batch_size, shuffle=True)
    val_loader = None
    if val_samples:
        val_loader = DataLoader(TensorDataset(*samples_to_tensors(val_samples)),
                                batch_size=batch_size)

    model = ConvoNetLightningModule(config, fit_params=fit_params)

    callbacks = []
    if val_loader is not None:
        callbacks.append(ModelCheckpoint(
            dirpath=checkpoint_dir,
            filename='convonet-{epoch:02d}-{val_loss:.2f}',
            save_top_k=1,
            monitor='val_loss',
            mode='min'
        ))

    trainer = pl.Trainer(
        max_epochs=max_epochs,
        callbacks=callbacks,
        accelerator='auto',
        devices=1,
        enable_progress_bar=True
    )

    trainer.fit(model, train_loader, val_loader)

    return model, trainer
