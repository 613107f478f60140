"""Conversion settings and their mapping to cbz2xtc command-line flags."""

import math
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

Orientation = Literal["landscape", "portrait"]
SplitMode = Literal["overlap", "split", "nosplit"]


class ConversionSettings(BaseModel):
    """
    Flat record of cbz2xtc options.

    Instances are frozen; per-job adjustments are made on copies via
    ``model_copy(update=...)`` so the caller's object is never mutated.
    Field names are exposed in camelCase on the wire.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    orientation: Orientation = "landscape"
    split_mode: SplitMode = "overlap"
    no_dither: bool = False
    overlap: bool = True
    split_spreads: str = ""
    split_all: bool = False
    skip: str = ""
    only: str = ""
    dont_split: str = ""
    contrast_boost: str = "4"
    margin: str = "0"
    include_overviews: bool = False
    sideways_overviews: bool = False
    select_overviews: str = ""
    start: int | None = None
    stop: int | None = None
    pad_black: bool = False
    hsplit_count: int | None = None
    hsplit_overlap: float | None = None
    hsplit_max_width: int | None = None
    vsplit_target: int | None = None
    vsplit_min_overlap: float | None = None
    sample_set: str = ""

    def normalized(self) -> "ConversionSettings":
        """
        Apply orientation/split-mode implications.

        Portrait output never splits and turns overviews sideways; the split
        mode then decides the effective ``overlap`` flag.
        """
        update: dict[str, object] = {}
        split_mode = self.split_mode
        if self.orientation == "portrait":
            split_mode = "nosplit"
            update["split_mode"] = split_mode
            update["sideways_overviews"] = True

        if split_mode == "overlap":
            update["overlap"] = True
        elif split_mode == "split":
            update["overlap"] = False

        return self.model_copy(update=update) if update else self

    def to_cbz2xtc_args(self) -> list[str]:
        """Translate the settings into cbz2xtc flags. ``--clean`` is always last."""
        args: list[str] = []

        if self.split_mode == "overlap" or self.overlap:
            args.append("--overlap")
        if self.no_dither:
            args.append("--no-dither")
        if self.split_all:
            args.append("--split-all")
        if self.include_overviews:
            args.append("--include-overviews")
        if self.sideways_overviews:
            args.append("--sideways-overviews")
        if self.pad_black:
            args.append("--pad-black")

        string_flags = [
            ("--split-spreads", self.split_spreads),
            ("--skip", self.skip),
            ("--only", self.only),
            ("--dont-split", self.dont_split),
            ("--contrast-boost", self.contrast_boost),
            ("--margin", self.margin),
            ("--select-overviews", self.select_overviews),
            ("--sample-set", self.sample_set),
        ]
        for flag, value in string_flags:
            if value and value.strip():
                args.extend([flag, value.strip()])

        positive_ints = [
            ("--start", self.start),
            ("--stop", self.stop),
            ("--hsplit-count", self.hsplit_count),
        ]
        for flag, value in positive_ints:
            if value is not None and value > 0:
                args.extend([flag, str(value)])

        if _is_finite(self.hsplit_overlap) and self.hsplit_overlap > 0:
            args.extend(["--hsplit-overlap", _format_number(self.hsplit_overlap)])
        if self.hsplit_max_width is not None and self.hsplit_max_width > 0:
            args.extend(["--hsplit-max-width", str(self.hsplit_max_width)])
        if self.vsplit_target is not None and self.vsplit_target > 0:
            args.extend(["--vsplit-target", str(self.vsplit_target)])
        if _is_finite(self.vsplit_min_overlap) and self.vsplit_min_overlap >= 0:
            args.extend(["--vsplit-min-overlap", _format_number(self.vsplit_min_overlap)])

        args.append("--clean")
        return args


DEFAULT_CONVERSION_SETTINGS = ConversionSettings()


def _is_finite(value: float | None) -> bool:
    return value is not None and math.isfinite(value)


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def build_page_range_list(count: int) -> str:
    """``5`` -> ``"1,2,3,4,5"``."""
    return ",".join(str(i) for i in range(1, count + 1))


def shift_dont_split_for_prepended_cover(raw: str) -> str:
    """
    Shift a dont-split page list by one for an inserted cover page.

    Numeric tokens move up by one, page 1 (the inserted cover) is added in
    front and duplicates are dropped. Non-numeric tokens are kept as-is.
    """
    tokens: list[str] = ["1"]
    for token in raw.split(","):
        token = token.strip()
        if not token:
            continue
        tokens.append(str(int(token) + 1) if token.isascii() and token.isdigit() else token)

    return ",".join(dict.fromkeys(tokens))
