"""
CRNN line recognition network (CNN feature extractor + BiLSTM encoder).

Input:  (batch, 1, 32, 256) float tensor, background 0 and ink 1
Output: (batch, timesteps, num_classes) per-timestep softmax probabilities

With a 32x256 input the convolutional stack reduces height to 1 and width
to 63 timesteps:

    conv64  -> pool 2x2          (64, 16, 128)
    conv128 -> pool 2x2          (128, 8, 64)
    conv256 -> bn -> conv256 -> pool 2x1   (256, 4, 64)
    conv512 -> bn -> conv512 -> pool 2x1   (512, 2, 64)
    conv512 2x2 valid            (512, 1, 63)
"""

import torch
import torch.nn as nn


def _conv(in_channels: int, out_channels: int, batch_norm: bool = False) -> list:
    layers = [nn.Conv2d(in_channels, out_channels, kernel_size=3, stride=1, padding=1)]
    if batch_norm:
        layers.append(nn.BatchNorm2d(out_channels))
    layers.append(nn.ReLU(inplace=True))
    return layers


class CRNN(nn.Module):
    """
    Convolutional recurrent network for single-line text recognition.

    Args:
        num_classes: Alphabet size + 1 (the last class is the CTC blank)
        hidden_size: LSTM units per direction
    """

    def __init__(self, num_classes: int, hidden_size: int = 256):
        super().__init__()
        self.num_classes = num_classes

        self.cnn = nn.Sequential(
            *_conv(1, 64),
            nn.MaxPool2d(kernel_size=2, stride=2),

            *_conv(64, 128),
            nn.MaxPool2d(kernel_size=2, stride=2),

            *_conv(128, 256, batch_norm=True),
            *_conv(256, 256),
            nn.MaxPool2d(kernel_size=(2, 1), stride=(2, 1)),

            *_conv(256, 512, batch_norm=True),
            *_conv(512, 512),
            nn.MaxPool2d(kernel_size=(2, 1), stride=(2, 1)),

            nn.Conv2d(512, 512, kernel_size=2, stride=1, padding=0),
            nn.ReLU(inplace=True),
        )

        self.rnn1 = nn.LSTM(512, hidden_size, bidirectional=True, batch_first=True)
        self.rnn2 = nn.LSTM(hidden_size * 2, hidden_size, bidirectional=True, batch_first=True)
        self.fc = nn.Linear(hidden_size * 2, num_classes)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        conv = self.cnn(x)                      # (B, 512, 1, T)
        if conv.size(2) != 1:
            raise ValueError(f"Feature map height must be 1, got {conv.size(2)}")
        seq = conv.squeeze(2).permute(0, 2, 1)  # (B, T, 512)

        seq, _ = self.rnn1(seq)
        seq, _ = self.rnn2(seq)

        return torch.softmax(self.fc(seq), dim=-1)

    def summary(self) -> str:
        """Layer listing with parameter counts."""
        lines = [f"CRNN(num_classes={self.num_classes})"]
        for name, module in self.named_children():
            params = sum(p.numel() for p in module.parameters())
            lines.append(f"  {name}: {module.__class__.__name__} ({params:,} params)")
        total = sum(p.numel() for p in self.parameters())
        lines.append(f"  total: {total:,} params")
        return "\n".join(lines)
