"""
Sequence predictor for adaptive task suggestions

A small softmax classifier over a flattened window of behavior samples.
It is an owned resource with an explicit lifecycle:
init() -> train()/bootstrap() -> predict() ... -> dispose()
"""

import logging
import threading
from typing import List, Optional, Sequence, Tuple

import numpy as np

from config import BOOTSTRAP_SEQUENCES, MODEL_SEED, SEQUENCE_LENGTH
from errors import ModelError
from models import BehaviorSample, Position

logger = logging.getLogger(__name__)


TASK_CATEGORIES = ["stretch", "posture", "circulation", "balance", "relaxation"]

LEANING = {Position.LEANING_LEFT, Position.LEANING_RIGHT}
SLOUCHING = {Position.FORWARD_SLOUCH, Position.SLOUCHING_BACK}

# Normalization ranges
MAX_WEIGHT_KG = 150.0
MAX_SESSION_MINUTES = 120.0
MAX_POSITION_CHANGES = 20.0

FEATURES_PER_STEP = 11

# Limb contacts (left arm, right arm, left leg, right leg) producing each position
POSITION_LIMBS = {
    Position.BALANCED: (1, 1, 1, 1),
    Position.LEANING_LEFT: (1, 0, 1, 0),
    Position.LEANING_RIGHT: (0, 1, 0, 1),
    Position.FORWARD_SLOUCH: (0, 0, 1, 1),
    Position.SLOUCHING_BACK: (1, 1, 0, 0),
    Position.IRREGULAR: (1, 0, 0, 1),
}


def encode_step(
    weight: float,
    position: Position,
    sitting_minutes: float,
    limbs: Sequence[bool],
    position_changes: int,
) -> np.ndarray:
    """Feature vector of one time step"""
    return np.array([
        min(max(weight, 0.0) / MAX_WEIGHT_KG, 1.0),
        1.0 if position == Position.BALANCED else 0.0,
        1.0 if position in LEANING else 0.0,
        1.0 if position in SLOUCHING else 0.0,
        1.0 if position == Position.IRREGULAR else 0.0,
        min(max(sitting_minutes, 0.0) / MAX_SESSION_MINUTES, 1.0),
        *[1.0 if active else 0.0 for active in limbs],
        min(max(position_changes, 0) / MAX_POSITION_CHANGES, 1.0),
    ], dtype=float)


def encode_sample(sample: BehaviorSample) -> np.ndarray:
    return encode_step(
        sample.weight,
        sample.position,
        sample.sitting_duration,
        (sample.left_arm, sample.right_arm, sample.left_leg, sample.right_leg),
        sample.position_changes,
    )


def encode_sequence(samples: Sequence[BehaviorSample], length: int = SEQUENCE_LENGTH) -> np.ndarray:
    """(length, FEATURES_PER_STEP) matrix from the most recent samples"""
    if len(samples) < length:
        raise ModelError(f"Need {length} samples, got {len(samples)}")
    return np.stack([encode_sample(s) for s in list(samples)[-length:]])


def label_sequence(sequence: np.ndarray) -> int:
    """
    Heuristic category for a feature sequence. Used to label both the
    synthetic bootstrap data and windows of real samples.
    """
    last = sequence[-1]
    leaning = sequence[:, 2].mean()
    slouching = sequence[:, 3].mean()
    left = sequence[:, 6] + sequence[:, 8]
    right = sequence[:, 7] + sequence[:, 9]
    asymmetry = np.abs(left - right).mean() / 2.0

    if slouching >= 0.5 or leaning >= 0.5:
        return TASK_CATEGORIES.index("posture")
    if last[5] >= 0.5:
        return TASK_CATEGORIES.index("circulation")
    if asymmetry >= 0.5 or sequence[:, 4].mean() >= 0.5:
        return TASK_CATEGORIES.index("balance")
    if last[10] >= 0.5:
        return TASK_CATEGORIES.index("relaxation")
    return TASK_CATEGORIES.index("stretch")


def windows_from_samples(samples: Sequence[BehaviorSample], length: int = SEQUENCE_LENGTH) -> Tuple[np.ndarray, np.ndarray]:
    """Sliding windows over a sample buffer, labeled heuristically"""
    samples = list(samples)
    if len(samples) < length:
        return np.empty((0, length * FEATURES_PER_STEP)), np.empty((0,), dtype=int)

    encoded = np.stack([encode_sample(s) for s in samples])
    sequences = [encoded[i:i + length] for i in range(len(samples) - length + 1)]
    x = np.stack([seq.reshape(-1) for seq in sequences])
    y = np.array([label_sequence(seq) for seq in sequences], dtype=int)
    return x, y


def synthetic_sequences(count: int, length: int = SEQUENCE_LENGTH, seed: int = MODEL_SEED) -> Tuple[np.ndarray, np.ndarray]:
    """Plausible sitting sequences: steady weight, growing duration, occasional posture shifts"""
    rng = np.random.default_rng(seed)
    positions = list(POSITION_LIMBS)
    xs: List[np.ndarray] = []
    ys: List[int] = []

    for _ in range(count):
        weight = rng.uniform(45.0, 120.0)
        minutes = rng.uniform(0.0, 110.0)
        changes = int(rng.integers(0, 15))
        position = positions[rng.integers(len(positions))]
        steps = []
        for _step in range(length):
            if rng.random() < 0.2:
                position = positions[rng.integers(len(positions))]
                changes += 1
            steps.append(encode_step(
                weight + rng.normal(0.0, 1.5),
                position,
                minutes,
                [bool(v) for v in POSITION_LIMBS[position]],
                changes,
            ))
            minutes += 1.0
        sequence = np.stack(steps)
        xs.append(sequence.reshape(-1))
        ys.append(label_sequence(sequence))

    return np.stack(xs), np.array(ys, dtype=int)


class SequencePredictor:
    """
    Softmax regression over a flattened sample window.

    Training and prediction exclude each other: whichever comes second
    gets a ModelError instead of waiting.
    """

    def __init__(
        self,
        sequence_length: int = SEQUENCE_LENGTH,
        learning_rate: float = 0.5,
        l2: float = 1e-3,
        seed: int = MODEL_SEED,
    ):
        self.sequence_length = sequence_length
        self.learning_rate = learning_rate
        self.l2 = l2
        self.seed = seed

        self.weights: Optional[np.ndarray] = None
        self.bias: Optional[np.ndarray] = None
        self.trained = False
        self.training = False
        self.train_runs = 0
        self._lock = threading.Lock()

    @property
    def input_size(self) -> int:
        return self.sequence_length * FEATURES_PER_STEP

    @property
    def is_ready(self) -> bool:
        return self.weights is not None and self.trained and not self.training

    def init(self):
        rng = np.random.default_rng(self.seed)
        self.weights = rng.normal(0.0, 0.01, size=(self.input_size, len(TASK_CATEGORIES)))
        self.bias = np.zeros(len(TASK_CATEGORIES))
        self.trained = False
        self.train_runs = 0

    def dispose(self):
        with self._lock:
            self.weights = None
            self.bias = None
            self.trained = False

    def bootstrap(self, count: int = BOOTSTRAP_SEQUENCES, epochs: int = 300) -> float:
        """Initial training on synthetic sequences. Returns final loss."""
        x, y = synthetic_sequences(count, self.sequence_length, self.seed)
        return self.train(x, y, epochs=epochs)

    def train(self, x: np.ndarray, y: np.ndarray, epochs: int = 100) -> float:
        """
        Full-batch gradient descent, continuing from the current weights.

        Raises:
            ModelError: not initialized, busy, or bad training data
        """
        if self.weights is None:
            raise ModelError("Predictor is not initialized")
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=int)
        if x.ndim != 2 or x.shape[1] != self.input_size or len(x) != len(y) or len(x) == 0:
            raise ModelError(f"Bad training data shape {x.shape} / {y.shape}")

        if not self._lock.acquire(blocking=False):
            raise ModelError("Predictor is busy")
        self.training = True
        try:
            weights, bias = self.weights.copy(), self.bias.copy()
            targets = np.eye(len(TASK_CATEGORIES))[y]
            loss = 0.0
            for _ in range(epochs):
                probs = self._softmax(x @ self.weights + self.bias)
                loss = float(-np.mean(np.sum(targets * np.log(probs + 1e-12), axis=1)))
                grad = (probs - targets) / len(x)
                self.weights -= self.learning_rate * (x.T @ grad + self.l2 * self.weights)
                self.bias -= self.learning_rate * grad.sum(axis=0)

            if not (np.all(np.isfinite(self.weights)) and np.all(np.isfinite(self.bias))):
                # Roll back so the next run starts from the last good model
                self.weights, self.bias = weights, bias
                raise ModelError("Training diverged")

            self.trained = True
            self.train_runs += 1
            logger.info("Predictor trained on %d sequences (run %d, loss %.4f)", len(x), self.train_runs, loss)
            return loss
        finally:
            self.training = False
            self._lock.release()

    def predict(self, sequence: np.ndarray) -> np.ndarray:
        """
        Probability over TASK_CATEGORIES for one (length, features) sequence.

        Raises:
            ModelError: not ready, busy, or bad input
        """
        if not self.is_ready:
            raise ModelError("Predictor is not ready")
        sequence = np.asarray(sequence, dtype=float)
        if sequence.size != self.input_size:
            raise ModelError(f"Expected {self.input_size} features, got {sequence.size}")

        if not self._lock.acquire(blocking=False):
            raise ModelError("Predictor is busy")
        try:
            probs = self._softmax(sequence.reshape(1, -1) @ self.weights + self.bias)[0]
        finally:
            self._lock.release()

        if not np.all(np.isfinite(probs)):
            raise ModelError("Prediction is not finite")
        return probs

    @staticmethod
    def _softmax(logits: np.ndarray) -> np.ndarray:
        shifted = logits - logits.max(axis=1, keepdims=True)
        exp = np.exp(shifted)
        return exp / exp.sum(axis=1, keepdims=True)
