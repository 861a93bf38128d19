"""
Document and ID-card workflows as explicit state machines.

Each workflow is a frozen state value plus a pure reducer, (state, event) ->
state. The PageSession and CardSession handles own one state value each and
wire the reducers to the camera, the recognition pipeline, the exporter and
the record store. Only one workflow is active at a time.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from .bitmap import Bitmap, CropRegion, Size
from .capture import CaptureSession
from .errors import EmptyExport, IncompleteCard, InvalidTransition
from .exporter import (
    ShareMetadata,
    ShareResult,
    ShareSurface,
    build_pdf,
    combine_card_sides,
    export_filename,
    share_or_download,
)
from .pipeline import PipelineOrchestrator, PipelineResult
from .progress import ProgressChannel
from .store import ScanRecord, ScanStore
from .transform import FilterKind, apply_filter, crop, scale_display_region

logger = logging.getLogger(__name__)

AI_ENHANCEMENT_SETTING = "ai_enhancement"


# ============================================================================
# Document pages
# ============================================================================

@dataclass(frozen=True)
class Page:
    """A committed page. `bitmap` is always derived from `original`."""
    original: Bitmap
    bitmap: Bitmap
    filter: FilterKind = FilterKind.ORIGINAL


@dataclass(frozen=True)
class Staged:
    bitmap: Bitmap
    cropping: bool = True


@dataclass(frozen=True)
class PageState:
    pages: tuple[Page, ...] = ()
    staged: Staged | None = None
    current_index: int = 0
    active_filter: FilterKind = FilterKind.ORIGINAL

    @property
    def phase(self) -> str:
        """One of "empty", "staging" or "committed"."""
        if self.staged is not None:
            return "staging"
        return "committed" if self.pages else "empty"

    @property
    def cropping(self) -> bool:
        return self.staged is not None and self.staged.cropping

    @property
    def current_page(self) -> Page | None:
        if not self.pages:
            return None
        return self.pages[self.current_index]


@dataclass(frozen=True)
class ImageStaged:
    """A captured or uploaded image enters the crop step."""
    bitmap: Bitmap


@dataclass(frozen=True)
class CropConfirmed:
    region: CropRegion
    # Size the region was drawn on; None means natural pixel coordinates
    display_size: Size | None = None


@dataclass(frozen=True)
class CropCancelled:
    pass


@dataclass(frozen=True)
class StagedFilterSelected:
    kind: FilterKind


@dataclass(frozen=True)
class PageAdded:
    pass


@dataclass(frozen=True)
class StagingDiscarded:
    pass


@dataclass(frozen=True)
class PageFilterApplied:
    index: int
    kind: FilterKind


@dataclass(frozen=True)
class PageSelected:
    index: int


@dataclass(frozen=True)
class PageDeleted:
    index: int


@dataclass(frozen=True)
class SessionReset:
    pass


def _require_index(state: PageState, index: int) -> None:
    if not 0 <= index < len(state.pages):
        raise InvalidTransition(f"No page at index {index}")


def reduce_pages(state: PageState, event: object) -> PageState:
    """
    Apply one event to a document workflow state.

    Raises:
        InvalidTransition: If the event is not allowed in the current state
        InvalidRegion: If a confirmed crop region is empty
    """
    if isinstance(event, ImageStaged):
        return replace(state, staged=Staged(event.bitmap, cropping=True), active_filter=FilterKind.ORIGINAL)

    if isinstance(event, CropConfirmed):
        if not state.cropping:
            raise InvalidTransition("No image is being cropped")
        source = state.staged.bitmap
        region = event.region
        if event.display_size is not None:
            region = scale_display_region(region, event.display_size, source.size)
        return replace(state, staged=Staged(crop(source, region), cropping=False))

    if isinstance(event, CropCancelled):
        if not state.cropping:
            raise InvalidTransition("No image is being cropped")
        return replace(state, staged=Staged(state.staged.bitmap, cropping=False))

    if isinstance(event, StagedFilterSelected):
        if state.staged is None or state.staged.cropping:
            raise InvalidTransition("Filters apply after cropping")
        return replace(state, active_filter=FilterKind(event.kind))

    if isinstance(event, PageAdded):
        if state.staged is None or state.staged.cropping:
            raise InvalidTransition("Nothing ready to add")
        source = state.staged.bitmap
        page = Page(
            original=source,
            bitmap=apply_filter(source, state.active_filter),
            filter=state.active_filter,
        )
        pages = state.pages + (page,)
        return PageState(pages=pages, current_index=len(pages) - 1)

    if isinstance(event, StagingDiscarded):
        return replace(state, staged=None, active_filter=FilterKind.ORIGINAL)

    if isinstance(event, PageFilterApplied):
        _require_index(state, event.index)
        kind = FilterKind(event.kind)
        page = state.pages[event.index]
        updated = Page(page.original, apply_filter(page.original, kind), kind)
        pages = state.pages[:event.index] + (updated,) + state.pages[event.index + 1:]
        return replace(state, pages=pages)

    if isinstance(event, PageSelected):
        _require_index(state, event.index)
        return replace(state, current_index=event.index)

    if isinstance(event, PageDeleted):
        _require_index(state, event.index)
        pages = state.pages[:event.index] + state.pages[event.index + 1:]
        current = max(0, event.index - 1) if pages else 0
        return replace(state, pages=pages, current_index=current)

    if isinstance(event, SessionReset):
        return PageState()

    raise InvalidTransition(f"Unknown document event: {type(event).__name__}")


# ============================================================================
# ID card
# ============================================================================

class CaptureStep(str, Enum):
    FRONT = "front"
    BACK = "back"


class ColorMode(str, Enum):
    COLOR = "color"
    GRAYSCALE = "grayscale"


@dataclass(frozen=True)
class CardState:
    front: Bitmap | None = None
    back: Bitmap | None = None
    color_mode: ColorMode = ColorMode.COLOR
    step: CaptureStep = CaptureStep.FRONT

    @property
    def complete(self) -> bool:
        return self.front is not None and self.back is not None


@dataclass(frozen=True)
class SideCaptured:
    bitmap: Bitmap


@dataclass(frozen=True)
class SideSelected:
    """Point the next capture at a side, e.g. to retake the front."""
    step: CaptureStep


@dataclass(frozen=True)
class ColorModeSelected:
    mode: ColorMode


@dataclass(frozen=True)
class CardReset:
    pass


def reduce_card(state: CardState, event: object) -> CardState:
    """Apply one event to an ID-card workflow state."""
    if isinstance(event, SideCaptured):
        if state.step is CaptureStep.FRONT:
            return replace(state, front=event.bitmap, step=CaptureStep.BACK)
        return replace(state, back=event.bitmap)

    if isinstance(event, SideSelected):
        return replace(state, step=CaptureStep(event.step))

    if isinstance(event, ColorModeSelected):
        return replace(state, color_mode=ColorMode(event.mode))

    if isinstance(event, CardReset):
        return CardState()

    raise InvalidTransition(f"Unknown ID card event: {type(event).__name__}")


# ============================================================================
# Workflow handles
# ============================================================================

_active_workflow: "_Workflow | None" = None


@dataclass
class ExportOutcome:
    record: ScanRecord | None
    share: ShareResult
    page_count: int
    filename: str = ""


class _Workflow:
    """Shared plumbing: camera frames, exclusivity and export bookkeeping."""

    def __init__(self,
                 capture: CaptureSession | None = None,
                 store: ScanStore | None = None,
                 surface: ShareSurface | None = None,
                 export_dir: str | Path = "."):
        global _active_workflow
        if _active_workflow is not None and _active_workflow is not self:
            _active_workflow.close()
        _active_workflow = self

        self.capture = capture
        self.store = store
        self.surface = surface
        self.export_dir = export_dir

    async def _grab_frame(self) -> Bitmap:
        if self.capture is None:
            raise InvalidTransition("No camera configured; load an image file instead")
        try:
            if not self.capture.is_live:
                await self.capture.start()
            return await self.capture.capture_frame()
        finally:
            self.capture.stop()

    def _record(self, record: ScanRecord) -> ScanRecord | None:
        if self.store is None:
            return None
        return self.store.save(record)

    def close(self) -> None:
        """Release the camera. Idempotent."""
        global _active_workflow
        if self.capture is not None:
            self.capture.stop()
        if _active_workflow is self:
            _active_workflow = None


class PageSession(_Workflow):
    """Document mode: ordered pages, OCR text and PDF export."""

    def __init__(self,
                 orchestrator: PipelineOrchestrator | None = None,
                 capture: CaptureSession | None = None,
                 store: ScanStore | None = None,
                 surface: ShareSurface | None = None,
                 export_dir: str | Path = "."):
        super().__init__(capture, store, surface, export_dir)
        self.orchestrator = orchestrator
        self.state = PageState()
        self.text = ""
        self.last_result: PipelineResult | None = None

    def dispatch(self, event: object) -> PageState:
        self.state = reduce_pages(self.state, event)
        return self.state

    # Input

    async def capture_image(self) -> PageState:
        """Grab one camera frame into the crop step; the camera is released."""
        bitmap = await self._grab_frame()
        return self.dispatch(ImageStaged(bitmap))

    def load_image(self, path: str | Path) -> PageState:
        return self.dispatch(ImageStaged(Bitmap.load(str(path))))

    # Editing

    def confirm_crop(self, region: CropRegion, display_size: Size | None = None) -> PageState:
        return self.dispatch(CropConfirmed(region, display_size))

    def cancel_crop(self) -> PageState:
        return self.dispatch(CropCancelled())

    def select_filter(self, kind: FilterKind | str) -> PageState:
        return self.dispatch(StagedFilterSelected(FilterKind(kind)))

    def add_page(self) -> PageState:
        return self.dispatch(PageAdded())

    def apply_filter(self, index: int, kind: FilterKind | str) -> PageState:
        return self.dispatch(PageFilterApplied(index, FilterKind(kind)))

    def delete_page(self, index: int) -> PageState:
        return self.dispatch(PageDeleted(index))

    def reset(self) -> PageState:
        self.text = ""
        self.last_result = None
        return self.dispatch(SessionReset())

    # Recognition

    def enhancement_enabled(self) -> bool:
        if self.store is None:
            return True
        return bool(self.store.get_setting(AI_ENHANCEMENT_SETTING, True))

    async def recognize(self,
                        index: int | None = None,
                        enhance: bool | None = None,
                        progress: ProgressChannel | None = None) -> PipelineResult:
        """
        Recognize the text of one committed page (default: the current one).

        The page state is left untouched whether recognition succeeds or
        fails, so a failed attempt can simply be retried.
        """
        if self.orchestrator is None:
            raise InvalidTransition("No recognition pipeline configured")
        if not self.state.pages:
            raise EmptyExport("No pages to recognize. Please scan a document first.")

        index = self.state.current_index if index is None else index
        _require_index(self.state, index)
        if enhance is None:
            enhance = self.enhancement_enabled()

        result = await self.orchestrator.process(
            self.state.pages[index].bitmap,
            enhance=enhance,
            progress=progress,
        )
        self.last_result = result
        self.text = result.text
        return result

    async def recognize_all(self, enhance: bool | None = None) -> str:
        """Recognize every page in order and join the texts."""
        texts = []
        for index in range(len(self.state.pages)):
            result = await self.recognize(index=index, enhance=enhance)
            if not result.no_text:
                texts.append(result.text)
        self.text = "\n\n".join(texts)
        return self.text

    # Export

    def export(self, include_text: bool = True, share: bool = False) -> ExportOutcome:
        """
        Build the PDF, share or download it, and log it in the history.

        Raises:
            EmptyExport: If there are no committed pages
        """
        if not self.state.pages:
            raise EmptyExport()

        pdf = build_pdf(
            [page.bitmap for page in self.state.pages],
            text=self.text if include_text else None,
            filename=export_filename("scan"),
        )
        shared = share_or_download(
            pdf,
            ShareMetadata(title="Scanned Document", text=self.text[:100]),
            surface=self.surface if share else None,
            download_dir=self.export_dir,
        )
        record = self._record(ScanRecord(
            type="document",
            page_count=len(self.state.pages),
            filename=pdf.filename,
            ocr_text=self.text,
        ))
        return ExportOutcome(record=record, share=shared, page_count=pdf.page_count, filename=pdf.filename)


class CardSession(_Workflow):
    """ID-card mode: a front and a back combined onto one page."""

    def __init__(self,
                 capture: CaptureSession | None = None,
                 store: ScanStore | None = None,
                 surface: ShareSurface | None = None,
                 export_dir: str | Path = "."):
        super().__init__(capture, store, surface, export_dir)
        self.state = CardState()

    def dispatch(self, event: object) -> CardState:
        self.state = reduce_card(self.state, event)
        return self.state

    async def capture_side(self) -> CardState:
        bitmap = await self._grab_frame()
        return self.dispatch(SideCaptured(bitmap))

    def load_side(self, path: str | Path) -> CardState:
        return self.dispatch(SideCaptured(Bitmap.load(str(path))))

    def retake(self, step: CaptureStep | str) -> CardState:
        return self.dispatch(SideSelected(CaptureStep(step)))

    def set_color_mode(self, mode: ColorMode | str) -> CardState:
        return self.dispatch(ColorModeSelected(ColorMode(mode)))

    def reset(self) -> CardState:
        return self.dispatch(CardReset())

    def combined(self) -> Bitmap:
        if not self.state.complete:
            raise IncompleteCard()
        return combine_card_sides(self.state.front, self.state.back, self.state.color_mode.value)

    def export(self, share: bool = False) -> ExportOutcome:
        """
        Raises:
            IncompleteCard: Unless both sides are captured
        """
        pdf = build_pdf([self.combined()], filename=export_filename("idcard"), title="ID Card")
        shared = share_or_download(
            pdf,
            ShareMetadata(title="ID Card"),
            surface=self.surface if share else None,
            download_dir=self.export_dir,
        )
        record = self._record(ScanRecord(type="idcard", page_count=1, filename=pdf.filename))
        return ExportOutcome(record=record, share=shared, page_count=pdf.page_count, filename=pdf.filename)
