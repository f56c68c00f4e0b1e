"""
ISO 10383 Market Identifier Codes.

The built-in set covers the operating and segment MICs of the venues the
upstream source stores list instruments on. Deployments that need venues
outside this set add them through the ``extra_mics`` setting rather than by
editing this module.

STDLIB ONLY - NO PYDANTIC.
"""

from collections.abc import Iterable

ISO_10383_MICS: frozenset[str] = frozenset(
    """
    XNAS XNGS XNMS XNCM XNYS ARCX XASE BATS BATY EDGX EDGA IEXG MEMX XCHI
    XBOS XPHL XCIS OTCM XOTC PINX XCBO XCBT XCME XNYM IFUS
    XTSE XTSX XCNQ NEOE XMEX BVMF XBUE XSGO XBOG XLIM
    XLON XLME IFEU XPAR XAMS XBRU XLIS XMSM XETR XFRA XSTU XMUN XHAM XDUS
    XBER XEUR XSWX XVTX XMIL XMAD XSTO XHEL XCSE XOSL XICE XWBO XWAR XPRA
    XBUD XATH XIST XLUX XRIS XTAL XLIT XBSE XZAG XBEL CHIX BATE TRQX AQXE
    XJSE XCAI XNAI XNSA XCAS
    XNSE XBOM XTKS XOSE XNGO XHKG XSHG XSHE XKRX XKOS XTAI XSES XASX XNZE
    XBKK XIDX XKLS XPHS XSTC XHNX XKAR XDHA XCOL
    XTAE XSAU XDFM XADS XQAT XKUW XBAH XMUS
    """.split()
)


def is_mic(code: str, extra: Iterable[str] = ()) -> bool:
    """True if ``code`` is a known MIC (built-in set plus ``extra``)."""
    return code in ISO_10383_MICS or code in frozenset(extra)
