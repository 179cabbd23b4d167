# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Debug Utilities for Segmentation Pipeline State Visualization

This module provides tools for capturing, summarising and visualizing the
intermediate tensors of a segmentation session: the letterboxed encoder input,
the image embedding, the prompt tensors and the decoder's candidate masks with
their scores. It makes layout mistakes (HWC vs NCHW, wrong normalisation,
padding in the wrong corner) visible at a glance.

Key Features:

1. **Non-intrusive Capture**: Stages only capture when given a debug name and
   capture is enabled globally
2. **On-demand Activation**: ``SegmentationSession(..., debug_mode=True)`` or
   ``enable_debug_mode()``
3. **Headless Output**: Figures are written to disk and closed, so the tools
   work on servers and in tests

Captured States:
- image_encoder.input_image: Normalised encoder input in the export's layout
- image_encoder.image_embedding: Canonical (1, C, H, W) embedding
- mask_decoder.point_coords: Click and padding point in the model frame
- mask_decoder.mask_logits: (N, H, W) candidate logits
- mask_decoder.iou_scores: (N,) clamped candidate scores

Usage:
    session = build_session("configs/mobile_sam.yaml", debug_mode=True)
    session.load_models(encoder_path, decoder_path)
    session.encode_image(image_bytes)
    session.predict(400, 300)

    from samseg.debug_utils import visualize_debug_states
    visualize_debug_states(save_path="debug_output/")
"""

import logging
import os
from collections import defaultdict
from typing import Dict, List, Optional

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns
import torch


class DebugStateCapture:
    """
    Central registry for captured debug states, keyed by component and state name.

    Capturing never changes the captured tensors; data is detached and copied
    to CPU before it is stored.
    """

    def __init__(self):
        self.states = defaultdict(dict)
        self.enabled = False
        self.capture_embeddings = True
        self.capture_masks = True

    def enable(self, capture_embeddings=True, capture_masks=True):
        """Enable debug capture for the selected state kinds."""
        self.enabled = True
        self.capture_embeddings = capture_embeddings
        self.capture_masks = capture_masks

    def disable(self):
        """Stop recording and drop everything recorded so far."""
        self.enabled = False
        self.clear()

    def clear(self):
        """Drop every recorded state."""
        self.states.clear()

    def capture(self, component_name: str, state_name: str, data: torch.Tensor,
                metadata: Optional[Dict] = None):
        """
        Capture a tensor state from a pipeline stage.

        Args:
            component_name: Name of the component (e.g., 'image_encoder', 'mask_decoder')
            state_name: Name of the specific state (e.g., 'image_embedding', 'mask_logits')
            data: Tensor data to capture
            metadata: Additional metadata about the captured state
        """
        if not self.enabled:
            return
        if not self.capture_embeddings and 'embedding' in state_name:
            return
        if not self.capture_masks and 'mask' in state_name:
            return

        if isinstance(data, torch.Tensor):
            data = data.detach().cpu().clone()

        self.states[component_name][state_name] = {
            'data': data,
            'shape': tuple(data.shape) if isinstance(data, torch.Tensor) else None,
            'dtype': data.dtype if isinstance(data, torch.Tensor) else None,
            'metadata': metadata or {}
        }

    def get_state(self, component_name: str, state_name: str = None):
        """One recorded state, or every state of ``component_name``."""
        if state_name is None:
            return self.states.get(component_name, {})
        return self.states.get(component_name, {}).get(state_name)

    def get_all_states(self):
        """All recorded states keyed by component."""
        return dict(self.states)


# Global debug capture instance
_debug_capture = DebugStateCapture()


def enable_debug_mode(capture_embeddings=True, capture_masks=True):
    """Enable global debug capture."""
    _debug_capture.enable(capture_embeddings, capture_masks)


def disable_debug_mode():
    """Disable global debug capture."""
    _debug_capture.disable()


def capture_debug_state(component_name: str, state_name: str, data: torch.Tensor,
                        metadata: Optional[Dict] = None):
    """Record one stage tensor in the global registry (no-op while capture is off)."""
    _debug_capture.capture(component_name, state_name, data, metadata)


def get_debug_states():
    """Snapshot of the global registry: {component: {state: info}}."""
    return _debug_capture.get_all_states()


def clear_debug_states():
    """Forget every recorded stage tensor, keeping capture enabled."""
    _debug_capture.clear()


def is_debug_enabled():
    """True while stages should record their tensors."""
    return _debug_capture.enabled


# Visualization Functions
class SamVisualizer:
    """
    Visualization suite for captured segmentation states.

    Every method writes a PNG into ``save_path`` when one is given and returns
    the written path (or None). Figures are closed afterwards unless ``show``
    is set.
    """

    def __init__(self, figsize_base=(12, 8), dpi=100, show=False):
        self.figsize_base = figsize_base
        self.dpi = dpi
        self.show = show
        self.feature_cmap = 'viridis'
        self.mask_cmap = 'gray'

    def _finish(self, fig, save_path: Optional[str], file_name: str) -> Optional[str]:
        fig.tight_layout()
        out = None
        if save_path:
            out = os.path.join(save_path, file_name)
            fig.savefig(out, bbox_inches='tight', dpi=self.dpi)
        if self.show:
            plt.show()
        plt.close(fig)
        return out

    def visualize_input_image(self, input_image: torch.Tensor, layout: str = "NCHW",
                              save_path: Optional[str] = None) -> Optional[str]:
        """
        Show the normalised encoder input, rescaled per channel for display.

        Args:
            input_image: Encoder input in ``layout`` (HWC, CHW or NCHW)
            layout: Tensor layout of ``input_image``
            save_path: Directory to save the visualization
        """
        if layout == "NCHW":
            img = input_image[0].permute(1, 2, 0)
        elif layout == "CHW":
            img = input_image.permute(1, 2, 0)
        else:
            img = input_image
        img = img.float()

        # Undo the normalisation visually: stretch each channel to [0, 1]
        flat = img.reshape(-1, img.shape[-1])
        lo, hi = flat.min(0).values, flat.max(0).values
        img = ((img - lo) / (hi - lo).clamp(min=1e-6)).numpy()

        fig, ax = plt.subplots(1, 1, figsize=self.figsize_base, dpi=self.dpi)
        ax.imshow(img)
        ax.set_title(f'Encoder Input ({layout}, {img.shape[1]}x{img.shape[0]})')
        ax.axis('off')
        return self._finish(fig, save_path, "input_image.png")

    def visualize_image_embeddings(self, embeddings: torch.Tensor,
                                   save_path: Optional[str] = None,
                                   n_components_to_show: int = 8) -> Optional[str]:
        """
        Visualize embedding channels and their spatial patterns.

        Args:
            embeddings: Image embeddings tensor (B, C, H, W)
            save_path: Directory to save the visualization
            n_components_to_show: Number of embedding channels to visualize
        """
        if embeddings.dim() != 4:
            raise ValueError(f"Expected 4D embeddings (B, C, H, W), got {tuple(embeddings.shape)}")

        embeddings = embeddings[0].float()
        C = embeddings.shape[0]

        n_components = min(n_components_to_show, C)
        cols = 4
        rows = (n_components + cols - 1) // cols

        fig, axes = plt.subplots(rows, cols, figsize=(cols * 3, rows * 3), dpi=self.dpi,
                                 squeeze=False)
        axes = axes.flatten()

        for i in range(n_components):
            im = axes[i].imshow(embeddings[i].numpy(), cmap=self.feature_cmap)
            axes[i].set_title(f'Embedding Dim {i}')
            axes[i].axis('off')
            plt.colorbar(im, ax=axes[i], fraction=0.046)

        # Turn off unused axes
        for i in range(n_components, len(axes)):
            axes[i].axis('off')

        out = self._finish(fig, save_path, "image_embeddings.png")
        self._visualize_embedding_pca(embeddings, save_path)
        return out

    def _visualize_embedding_pca(self, embeddings: torch.Tensor,
                                 save_path: Optional[str] = None) -> Optional[str]:
        """Visualize the first three principal components of the embedding."""
        C, H, W = embeddings.shape
        if C < 3 or H * W < 3:
            logging.warning(f"Embedding {tuple(embeddings.shape)} too small for PCA, skipping")
            return None

        # (H*W, C) samples, one per spatial location
        samples = embeddings.reshape(C, -1).transpose(0, 1)
        U, S, V = torch.pca_lowrank(samples, q=3, center=True)
        centered = samples - samples.mean(0, keepdim=True)
        pca_components = (centered @ V[:, :3]).reshape(H, W, 3)

        total_var = centered.pow(2).sum().clamp(min=1e-12)
        explained = (S[:3] ** 2) / total_var

        fig, axes = plt.subplots(1, 4, figsize=(16, 4), dpi=self.dpi)

        # RGB visualization of first 3 PCA components
        lo, hi = pca_components.min(), pca_components.max()
        pca_rgb = ((pca_components - lo) / (hi - lo).clamp(min=1e-6)).numpy()
        axes[0].imshow(pca_rgb)
        axes[0].set_title('PCA RGB (PC1=R, PC2=G, PC3=B)')
        axes[0].axis('off')

        for i in range(3):
            im = axes[i + 1].imshow(pca_components[:, :, i].numpy(), cmap=self.feature_cmap)
            axes[i + 1].set_title(f'PCA Component {i + 1}\n(Var: {explained[i].item():.3f})')
            axes[i + 1].axis('off')
            plt.colorbar(im, ax=axes[i + 1], fraction=0.046)

        return self._finish(fig, save_path, "embedding_pca.png")

    def visualize_mask_candidates(self, mask_logits: torch.Tensor,
                                  scores: Optional[torch.Tensor] = None,
                                  point_coords: Optional[torch.Tensor] = None,
                                  coords_scale: float = 1.0,
                                  save_path: Optional[str] = None) -> Optional[str]:
        """
        Show every candidate's logits next to a bar chart of the candidate scores.

        Args:
            mask_logits: Candidate logits (N, H, W)
            scores: Candidate scores (N,)
            point_coords: Prompt points (1, P, 2) in the model frame; the first
                one (the click) is drawn on every candidate
            coords_scale: Factor from the model frame to the mask resolution
            save_path: Directory to save the visualization
        """
        if mask_logits.dim() != 3:
            raise ValueError(f"Expected mask logits (N, H, W), got {tuple(mask_logits.shape)}")

        n = mask_logits.shape[0]
        cols = n + (1 if scores is not None else 0)
        fig, axes = plt.subplots(1, max(cols, 1), figsize=(max(cols, 1) * 4, 4), dpi=self.dpi,
                                 squeeze=False)
        axes = axes.flatten()

        for i in range(n):
            im = axes[i].imshow(mask_logits[i].float().numpy(), cmap=self.mask_cmap)
            title = f'Candidate {i}'
            if scores is not None and i < scores.numel():
                title += f' (score {scores[i].item():.3f})'
            axes[i].set_title(title)
            axes[i].axis('off')
            plt.colorbar(im, ax=axes[i], fraction=0.046)
            if point_coords is not None:
                click = point_coords.reshape(-1, 2)[0] * coords_scale
                axes[i].scatter([click[0].item()], [click[1].item()],
                                c='red', marker='*', s=120)

        if scores is not None:
            ax = axes[n]
            values = scores.float().flatten().numpy()
            sns.barplot(x=np.arange(len(values)), y=values, ax=ax, color='steelblue')
            ax.set_ylim(0.0, 1.0)
            ax.set_xlabel('Candidate')
            ax.set_ylabel('Score')
            ax.set_title('Candidate Scores')

        return self._finish(fig, save_path, "mask_candidates.png")


def visualize_debug_states(debug_states: Optional[Dict] = None,
                           save_path: Optional[str] = None,
                           create_summary: bool = True) -> List[str]:
    """
    Visualization of all captured debug states.

    Args:
        debug_states: Debug states dictionary (if None, use global states)
        save_path: Directory to save visualizations
        create_summary: Whether to create a summary report

    Returns:
        List[str]: Paths of the files written.
    """
    if debug_states is None:
        debug_states = get_debug_states()

    if not debug_states:
        logging.warning("No debug states captured. Enable debug mode first.")
        return []

    if save_path:
        os.makedirs(save_path, exist_ok=True)

    visualizer = SamVisualizer()
    written = []

    for component_name, component_states in debug_states.items():
        logging.info(f"Visualizing {component_name}...")

        try:
            if 'input_image' in component_states:
                info = component_states['input_image']
                layout = info['metadata'].get('layout', 'NCHW')
                written.append(visualizer.visualize_input_image(
                    info['data'], layout=layout, save_path=save_path
                ))
            if 'image_embedding' in component_states:
                data = component_states['image_embedding']['data']
                if data.dim() == 4:
                    written.append(visualizer.visualize_image_embeddings(
                        data, save_path=save_path
                    ))
            if 'mask_logits' in component_states:
                scores = component_states.get('iou_scores', {}).get('data')
                mask_logits = component_states['mask_logits']['data']
                point_coords, coords_scale = None, 1.0
                if 'point_coords' in component_states:
                    point_info = component_states['point_coords']
                    point_coords = point_info['data']
                    target_size = point_info['metadata'].get('target_size')
                    if target_size:
                        coords_scale = mask_logits.shape[-1] / float(target_size)
                written.append(visualizer.visualize_mask_candidates(
                    mask_logits,
                    scores=scores,
                    point_coords=point_coords,
                    coords_scale=coords_scale,
                    save_path=save_path,
                ))
        except (ValueError, RuntimeError) as e:
            logging.warning(f"Failed to visualize {component_name}: {e}")

    if create_summary and save_path:
        written.append(_create_debug_summary(debug_states, save_path))

    return [path for path in written if path]


def _create_debug_summary(debug_states: Dict, save_path: str) -> str:
    """Write shape, dtype, value statistics and metadata per state to debug_summary.txt."""
    summary_path = os.path.join(save_path, "debug_summary.txt")

    with open(summary_path, 'w') as f:
        f.write("Segmentation Debug States Summary\n")
        f.write("=" * 50 + "\n\n")

        for component_name, component_states in debug_states.items():
            f.write(f"Component: {component_name}\n")
            f.write("-" * 30 + "\n")

            for state_name, state_info in component_states.items():
                data = state_info['data']
                metadata = state_info.get('metadata', {})

                f.write(f"  State: {state_name}\n")
                f.write(f"    Shape: {state_info['shape']}\n")
                f.write(f"    Dtype: {state_info['dtype']}\n")

                if isinstance(data, torch.Tensor) and data.numel() > 0:
                    values = data.float()
                    f.write(f"    Min: {values.min().item():.6f}\n")
                    f.write(f"    Max: {values.max().item():.6f}\n")
                    f.write(f"    Mean: {values.mean().item():.6f}\n")
                    if values.numel() > 1:
                        f.write(f"    Std: {values.std().item():.6f}\n")

                if metadata:
                    f.write(f"    Metadata: {metadata}\n")
                f.write("\n")
            f.write("\n")

    return summary_path
