"""Tests for matching images to layers and applying them as fills."""

from __future__ import annotations

import asyncio
import base64
from unittest.mock import AsyncMock, Mock

import pytest
from pydantic import ValidationError

from import_errors import SelectionError
from figma_communicator import ToolExecutionError
from helpers import FakeFigmaHost, frame, group, node, rect, text
from image_import import (
    SKIP_NO_FILLS,
    SKIP_NO_MATCH,
    ImageRecord,
    ImportResult,
    SkippedDetail,
    apply_images,
    image_fill,
    run_import,
)
from layer_index import build_layer_index
from import_session import ImportSession


def image(name: str, extension: str = "png", data: bytes | None = None) -> ImageRecord:
    payload = data if data is not None else name.encode()
    return ImageRecord(name=name, extension=extension, data=payload, size=len(payload))


class TestImageRecord:
    """Tests for ImageRecord payload conversion."""

    def test_from_byte_list(self) -> None:
        record = ImageRecord.model_validate({"name": "hero", "extension": "png", "data": [137, 80, 78, 71], "size": 4})

        assert record.data == b"\x89PNG"
        assert record.filename == "hero.png"

    def test_from_base64(self) -> None:
        encoded = base64.b64encode(b"\x89PNG").decode()
        record = ImageRecord.model_validate({"name": "hero", "extension": "jpg", "data": encoded, "size": 4})

        assert record.data == b"\x89PNG"

    def test_from_typed_array_object(self) -> None:
        record = ImageRecord.model_validate({"name": "a", "extension": "png", "data": {"1": 2, "0": 1, "10": 3, "2": 9}})

        assert record.data == bytes([1, 2, 9, 3])

    def test_invalid_byte_values_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ImageRecord.model_validate({"name": "a", "extension": "png", "data": [300]})

    @pytest.mark.parametrize("data", [["x"], [1.5], [None]])
    def test_non_integer_list_items_rejected(self, data: list) -> None:
        with pytest.raises(ValidationError, match="Image data must be byte values"):
            ImageRecord.model_validate({"name": "a", "extension": "png", "data": data})

    @pytest.mark.parametrize("data", [{"0": "a"}, {"0": 1.5}, {"first": 1}])
    def test_non_integer_object_values_rejected(self, data: dict) -> None:
        with pytest.raises(ValidationError, match="Image data must be byte values"):
            ImageRecord.model_validate({"name": "a", "extension": "png", "data": data})

    def test_invalid_base64_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ImageRecord.model_validate({"name": "a", "extension": "png", "data": "not base64!"})

    def test_immutable(self) -> None:
        record = image("hero")

        with pytest.raises(ValidationError):
            record.name = "other"  # type: ignore[misc]

    def test_filename_without_extension(self) -> None:
        assert image("hero", extension="").filename == "hero"


class TestImportResult:
    """Tests for ImportResult serialization."""

    def test_payload_uses_camel_case(self) -> None:
        result = ImportResult(
            total_images=2,
            mapped=1,
            skipped=1,
            skipped_details=[SkippedDetail(filename="a.png", reason=SKIP_NO_MATCH)],
        )

        assert result.to_payload() == {
            "totalImages": 2,
            "mapped": 1,
            "skipped": 1,
            "skippedDetails": [{"filename": "a.png", "reason": "No matching layer found"}],
        }


class TestApplyImages:
    """Tests for apply_images."""

    @pytest.fixture
    def host(self) -> FakeFigmaHost:
        return FakeFigmaHost()

    @pytest.mark.asyncio
    async def test_first_layer_in_traversal_order_wins(self, host: FakeFigmaHost) -> None:
        hero_rect = rect("hero")
        hero_frame = frame("hero")
        index = build_layer_index(frame("root", hero_rect, hero_frame))

        result = await apply_images([image("hero")], index, host)

        assert result.mapped == 1
        assert result.skipped == 0
        assert [args[0] for args in host.called("set_fills")] == [hero_rect]
        assert hero_rect.fills == [{"type": "IMAGE", "scaleMode": "FILL", "imageHash": "hash-1"}]
        assert hero_frame.fills == []

    @pytest.mark.asyncio
    async def test_missing_layer_is_skipped_without_host_calls(self, host: FakeFigmaHost) -> None:
        index = build_layer_index(frame("root", rect("hero")))

        result = await apply_images([image("missing")], index, host)

        assert result.total_images == 1
        assert result.mapped == 0
        assert result.skipped == 1
        assert result.skipped_details == [SkippedDetail(filename="missing.png", reason="No matching layer found")]
        assert host.calls == []

    @pytest.mark.asyncio
    async def test_partial_batch_reports_progress_per_image(self, host: FakeFigmaHost) -> None:
        index = build_layer_index(frame("root", rect("a"), rect("b")))
        progress = Mock()

        result = await apply_images([image("a"), image("zzz"), image("b")], index, host, on_progress=progress)

        assert (result.total_images, result.mapped, result.skipped) == (3, 2, 1)
        assert [c.args[0] for c in progress.call_args_list] == [33, 67, 100]

    @pytest.mark.asyncio
    async def test_progress_for_single_failed_image_reaches_100(self, host: FakeFigmaHost) -> None:
        index = build_layer_index(frame("root"))
        progress = Mock()

        await apply_images([image("nope")], index, host, on_progress=progress)

        progress.assert_called_once_with(100)

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_rounded_half_up(self, host: FakeFigmaHost) -> None:
        index = build_layer_index(frame("root"))
        seen: list[int] = []

        await apply_images([image(f"i{n}") for n in range(8)], index, host, on_progress=seen.append)

        # 100/8 = 12.5 → 13, 37.5 → 38, ...
        assert seen == [13, 25, 38, 50, 63, 75, 88, 100]
        assert seen == sorted(seen)

    @pytest.mark.asyncio
    async def test_async_progress_callback_is_awaited(self, host: FakeFigmaHost) -> None:
        index = build_layer_index(frame("root", rect("a")))
        progress = AsyncMock()

        await apply_images([image("a"), image("b")], index, host, on_progress=progress)

        assert [c.args[0] for c in progress.await_args_list] == [50, 100]

    @pytest.mark.asyncio
    async def test_failing_progress_callback_does_not_change_result(self, host: FakeFigmaHost) -> None:
        index = build_layer_index(frame("root", rect("a")))
        progress = Mock(side_effect=RuntimeError("ui gone"))

        result = await apply_images([image("a"), image("a")], index, host, on_progress=progress)

        assert result.mapped == 2
        assert progress.call_count == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, host: FakeFigmaHost) -> None:
        progress = Mock()

        result = await apply_images([], build_layer_index(frame("root")), host, on_progress=progress)

        assert result == ImportResult(total_images=0, mapped=0, skipped=0, skipped_details=[])
        progress.assert_not_called()

    @pytest.mark.asyncio
    async def test_name_matching_is_normalized(self, host: FakeFigmaHost) -> None:
        logo = rect("Logo ")
        index = build_layer_index(frame("root", logo))

        result = await apply_images([image(" LOGO", extension="svg")], index, host)

        assert result.mapped == 1
        assert host.called("set_fills")[0][0] is logo

    @pytest.mark.asyncio
    async def test_extension_is_not_part_of_the_match(self, host: FakeFigmaHost) -> None:
        index = build_layer_index(frame("root", rect("hero.png")))

        result = await apply_images([image("hero", extension="png")], index, host)

        assert result.skipped_details[0].reason == SKIP_NO_MATCH

    @pytest.mark.asyncio
    async def test_text_layer_does_not_shadow_fillable_layer(self, host: FakeFigmaHost) -> None:
        label = text("logo")
        target = rect("logo")
        index = build_layer_index(frame("root", label, target))

        await apply_images([image("logo")], index, host)

        assert host.called("set_fills")[0][0] is target
        assert label.fills == []

    @pytest.mark.asyncio
    async def test_layer_without_fills_attribute(self, host: FakeFigmaHost) -> None:
        index = build_layer_index(frame("root", rect("hero", fills=None)))

        result = await apply_images([image("hero", extension="jpg")], index, host)

        assert result.skipped_details == [SkippedDetail(filename="hero.jpg", reason=SKIP_NO_FILLS)]
        assert host.called("create_image") == []

    @pytest.mark.asyncio
    async def test_duplicate_layers_only_first_receives_fill(self, host: FakeFigmaHost) -> None:
        first, second = rect("hero"), rect("hero")
        index = build_layer_index(frame("root", group("g", first), second))

        result = await apply_images([image("hero")], index, host)

        assert result.mapped == 1
        assert result.skipped_details == []
        assert second.fills == []

    @pytest.mark.asyncio
    async def test_image_creation_error_is_recorded_and_batch_continues(self, host: FakeFigmaHost) -> None:
        host.failing_images[b"broken"] = ToolExecutionError(
            {"code": "create_image_failed", "message": "Image is too large"}
        )
        index = build_layer_index(frame("root", rect("a"), rect("b")))

        result = await apply_images([image("a", data=b"broken"), image("b")], index, host)

        assert result.mapped == 1
        assert result.skipped_details == [
            SkippedDetail(filename="a.png", reason="Error applying image: Image is too large"),
        ]
        assert len(host.called("set_fills")) == 1

    @pytest.mark.asyncio
    async def test_fill_assignment_error_is_recorded(self, host: FakeFigmaHost) -> None:
        host.failures["set_fills"] = RuntimeError("node is locked")
        index = build_layer_index(frame("root", rect("a")))

        result = await apply_images([image("a")], index, host)

        assert result.skipped_details[0].reason == "Error applying image: node is locked"

    @pytest.mark.asyncio
    async def test_error_without_message_uses_type_name(self, host: FakeFigmaHost) -> None:
        host.failures["create_image"] = asyncio.TimeoutError()
        index = build_layer_index(frame("root", rect("a")))

        result = await apply_images([image("a")], index, host)

        assert result.skipped_details[0].reason.startswith("Error applying image: ")
        assert result.skipped_details[0].reason != "Error applying image: "

    @pytest.mark.asyncio
    async def test_images_are_applied_sequentially(self) -> None:
        in_flight = 0
        max_in_flight = 0
        order: list[bytes] = []

        class SlowHost(FakeFigmaHost):
            async def create_image(self, data: bytes) -> str:
                nonlocal in_flight, max_in_flight
                in_flight += 1
                max_in_flight = max(max_in_flight, in_flight)
                await asyncio.sleep(0.001)
                order.append(data)
                in_flight -= 1
                return "h"

        index = build_layer_index(frame("root", rect("a"), rect("b"), rect("c")))

        await apply_images([image("c"), image("a"), image("b")], index, SlowHost())

        assert max_in_flight == 1
        assert order == [b"c", b"a", b"b"]

    @pytest.mark.asyncio
    async def test_counts_always_add_up(self, host: FakeFigmaHost) -> None:
        host.failing_images[b"bad"] = RuntimeError("boom")
        tree = frame(
            "root",
            rect("a"),
            rect("b", fills=None),
            node("INSTANCE", "c", fills=None),
            text("d"),
            rect("e"),
        )
        batch = [image(n) for n in "abcdef"] + [image("e", data=b"bad")]

        result = await apply_images(batch, build_layer_index(tree), host)

        assert result.mapped + result.skipped == result.total_images == 7
        assert result.skipped == len(result.skipped_details)
        assert result.mapped == 2
        reasons = [d.reason for d in result.skipped_details]
        assert reasons.count(SKIP_NO_MATCH) == 3
        assert reasons.count(SKIP_NO_FILLS) == 1

    def test_image_fill_paint(self) -> None:
        assert image_fill("abc") == {"type": "IMAGE", "scaleMode": "FILL", "imageHash": "abc"}


class TestRunImport:
    """Tests for run_import."""

    @pytest.fixture
    def session(self) -> ImportSession:
        return ImportSession()

    @pytest.mark.asyncio
    async def test_imports_into_selected_frame_and_stores_result(self, session: ImportSession) -> None:
        target = rect("hero")
        host = FakeFigmaHost([frame("Card", target)])
        payloads = [{"name": "hero", "extension": "png", "data": [1, 2, 3], "size": 3}]

        result = await run_import(payloads, host, session)

        assert result.mapped == 1
        assert session.last_result is result
        assert host.called("create_image") == [(b"\x01\x02\x03",)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "selection, message",
        [
            ([], "Please select a frame to work with"),
            ([frame("a"), frame("b")], "Please select only one frame at a time"),
            ([group("g")], "Selected item must be a Frame. Please select a frame and try again."),
        ],
    )
    async def test_selection_errors_abort_before_mutation(self, session: ImportSession, selection, message: str) -> None:
        host = FakeFigmaHost(selection)

        with pytest.raises(SelectionError) as exc_info:
            await run_import([{"name": "a", "extension": "png", "data": [1]}], host, session)

        assert exc_info.value.message == message
        assert [name for name, _ in host.calls] == ["get_selection"]
        assert session.last_result is None

    @pytest.mark.asyncio
    async def test_new_import_overwrites_previous_result(self, session: ImportSession) -> None:
        host = FakeFigmaHost([frame("Card", rect("a"))])

        first = await run_import([{"name": "a", "extension": "png", "data": [1]}], host, session)
        second = await run_import([{"name": "x", "extension": "png", "data": [1]}], host, session)

        assert session.last_result is second
        assert first.mapped == 1 and second.mapped == 0
