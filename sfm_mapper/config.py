import json
import logging
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional

logger = logging.getLogger("sfm_mapper.config")


@dataclass
class MapperConfig:
    # Odometry between-factor noise (rad, m)
    odom_rotation_sigma: float = 0.02
    odom_translation_sigma: float = 0.05
    # Corner reprojection noise (px) and optional robust kernel
    camera_pixel_sigma: float = 1.0
    camera_robust: Optional[str] = "huber"
    camera_robust_k: Optional[float] = None
    # Pinning prior on fixed landmarks
    anchor_sigma: float = 1e-6
    # Prior on the first motion state so the graph is solvable before vision
    origin_rotation_sigma: float = 0.5
    origin_translation_sigma: float = 1.0
    # Prior tying non-anchor landmarks to their layout pose
    layout_rotation_sigma: float = 0.1
    layout_translation_sigma: float = 0.1
    tag_size: float = 0.1524
    fixed_landmarks: List[int] = field(default_factory=list)
    allow_unmapped_landmarks: bool = False
    # iSAM2
    relinearize_threshold: float = 0.001
    relinearize_skip: int = 1
    extra_iterations: int = 3
    factorization: str = "QR"

    def __post_init__(self):
        if self.tag_size <= 0.0:
            raise ValueError(f"tag_size must be positive, got {self.tag_size}")
        if self.extra_iterations < 0:
            raise ValueError(f"extra_iterations must be >= 0, got {self.extra_iterations}")
        if self.relinearize_skip < 1:
            raise ValueError(f"relinearize_skip must be >= 1, got {self.relinearize_skip}")
        if self.factorization.upper() not in ("QR", "CHOLESKY"):
            raise ValueError(f"factorization must be QR or CHOLESKY, got {self.factorization}")
        self.factorization = self.factorization.upper()
        self.fixed_landmarks = sorted({int(t) for t in self.fixed_landmarks})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MapperConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(path: Optional[str], overrides: Optional[Dict[str, Any]] = None) -> MapperConfig:
    """Read a JSON config file (if any) and apply non-None overrides on top."""
    data: Dict[str, Any] = {}
    if path:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Config {path} must hold a JSON object, got {type(data).__name__}")
    for k, v in (overrides or {}).items():
        if v is not None:
            data[k] = v
    return MapperConfig.from_dict(data)
