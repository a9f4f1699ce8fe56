"""Transform (processing recipe) definitions."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


@dataclass(frozen=True)
class TransformOutput:
    """One output of a transform: a preset plus error and priority policy."""
    preset: Mapping[str, Any]
    on_error: str = "StopProcessingJob"  # or 'ContinueJob'
    relative_priority: str = "Normal"  # 'Low', 'Normal', 'High'

    def to_payload(self) -> Dict[str, Any]:
        return {
            "preset": dict(self.preset),
            "onError": self.on_error,
            "relativePriority": self.relative_priority,
        }


@dataclass(frozen=True)
class TransformSpec:
    """A named transform with its outputs."""
    name: str
    outputs: List[TransformOutput] = field(default_factory=list)
    description: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Transform name is required")
        if not self.outputs:
            raise ValueError(f"Transform {self.name} needs at least one output")

    def to_payload(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {
            "outputs": [output.to_payload() for output in self.outputs],
        }
        if self.description:
            properties["description"] = self.description
        return {"properties": properties}


def builtin_preset(
    preset_name: str,
    configurations: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    """
    Build a built-in standard encoder preset.

    Args:
        preset_name: Named preset, e.g. 'ContentAwareEncoding' or 'AdaptiveStreaming'
        configurations: Optional preset configurations (complexity, bitrates, layers...)

    Returns:
        Preset payload
    """
    preset: Dict[str, Any] = {
        "@odata.type": "#Microsoft.Media.BuiltInStandardEncoderPreset",
        "presetName": preset_name,
    }
    if configurations:
        preset["configurations"] = dict(configurations)
    return preset


def content_aware_transform(
    name: str,
    max_height: int = 1080,
    min_height: int = 360,
    max_layers: int = 1,
    max_bitrate_bps: int = 6000000,
    min_bitrate_bps: int = 200000,
    key_frame_interval_seconds: int = 2,
) -> TransformSpec:
    """H264 content-aware encoding transform used by the bulk scanner."""
    configurations = {
        "complexity": "Quality",
        "interleaveOutput": "InterleavedOutput",
        "keyFrameIntervalInSeconds": key_frame_interval_seconds,
        "maxBitrateBps": max_bitrate_bps,
        "minBitrateBps": min_bitrate_bps,
        "maxHeight": max_height,
        "minHeight": min_height,
        "maxLayers": max_layers,
    }
    return TransformSpec(
        name=name,
        description="H264 content aware encoding with configuration settings",
        outputs=[TransformOutput(preset=builtin_preset("ContentAwareEncoding", configurations))],
    )
