"""The fixed set of per-level mip post-processors.

Each variant wraps a processor and corrects one generated level at a time.
``MipGenerator`` only accepts these variants.
"""

from dataclasses import dataclass

from ..config import AOMode, TextureType
from ..core import MipChain, MipLevel
from .ao import AOProcessor
from .mipmap import MipPostProcessor, PostProcessorKind
from .toksvig import ToksvigProcessor


@dataclass(frozen=True)
class ToksvigCorrection(MipPostProcessor):
    """Toksvig per-level correction against a pre-built normal chain.

    Runs inside ``MipGenerator`` and therefore never touches level 0.
    Energy-preserving mode rebuilds the whole chain and is only available
    through ``ToksvigProcessor.apply``.
    """

    kind = PostProcessorKind.TOKSVIG

    processor: ToksvigProcessor
    normal_chain: MipChain
    is_gloss: bool = False

    def applies_to(self, texture_type: TextureType) -> bool:
        return self.processor.settings.enabled and TextureType(texture_type) in (
            TextureType.ROUGHNESS, TextureType.GLOSS,
        )

    def apply(self, mip: MipLevel, source: MipLevel) -> MipLevel:
        if (mip.level < self.processor.settings.min_corrected_level
                or mip.level >= len(self.normal_chain)):
            return mip.clone()
        out, _ = self.processor.correct_level(
            mip, self.normal_chain[mip.level], self.is_gloss
        )
        return out


@dataclass(frozen=True)
class AOCorrection(MipPostProcessor):
    """Ambient-occlusion darkening of generated levels."""

    kind = PostProcessorKind.AMBIENT_OCCLUSION

    processor: AOProcessor

    def applies_to(self, texture_type: TextureType) -> bool:
        return (TextureType(texture_type) == TextureType.AMBIENT_OCCLUSION
                and AOMode(self.processor.settings.mode) != AOMode.NONE)

    def apply(self, mip: MipLevel, source: MipLevel) -> MipLevel:
        if mip.level < self.processor.settings.start_level:
            return mip.clone()
        return self.processor.process_level(mip)
