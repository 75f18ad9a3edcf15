"""
Offline evaluation of the CTC objective over pickled network outputs.

Usage
-----
    python -m ctc_objective.main datasetPath=/path/to/batches.pkl \
        ctc.policy=average_loss_check ctc.report_interval=500
"""

import logging
import os
import pickle

import hydra
import numpy as np
from omegaconf import OmegaConf
from tqdm import tqdm

from .config import CtcConfig
from .ctc import Ctc

logger = logging.getLogger(__name__)


def load_batches(path):
    with open(path, "rb") as handle:
        return pickle.load(handle)


def evaluate_batches(batches, ctc, show_progress=True):
    """Run loss, gradient and scoring over every batch; return the cumulative report."""
    for batch in tqdm(batches, disable=not show_progress):
        frame_counts = [int(f) for f in batch["frame_counts"]]
        utt_ids = batch.get("utt_ids")
        if utt_ids is None:
            utt_ids = [str(i) for i in range(len(frame_counts))]
        net_out = np.asarray(batch["net_out"])

        ctc.eval_parallel(utt_ids, frame_counts, net_out, batch["labels"])
        ctc.error_rate_mseq(frame_counts, net_out, batch["labels"])
    return ctc.report()


@hydra.main(version_base="1.1", config_path="conf", config_name="config")
def main(cfg):
    config = CtcConfig.from_dict(cfg.ctc)
    if config.log_to_wandb:
        import wandb

        wandb.init(
            project=cfg.wandb.project,
            name=cfg.wandb.run_name or os.path.basename(os.getcwd()),
            config=OmegaConf.to_container(cfg, resolve=True),
            mode=cfg.wandb.mode,
        )

    dataset_path = hydra.utils.to_absolute_path(cfg.datasetPath)
    batches = load_batches(dataset_path)
    logger.info("Loaded %d batches from %s", len(batches), dataset_path)

    report = evaluate_batches(batches, Ctc(config), show_progress=cfg.showProgress)
    logger.info("Report:%s", report)

    if config.log_to_wandb:
        wandb.finish()


if __name__ == "__main__":
    main()
