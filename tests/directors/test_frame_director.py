import asyncio
from unittest.mock import AsyncMock, patch

from adclone.pipeline.frame_director import FrameDirector, build_frame_request, parse_frame_record
from adclone.pipeline.models import FrameAssets, FrameType, JobState, SegmentPrompt


def _prompt(**fields):
    defaults = dict(first_frame_description="Runner laces shoes on a wet city street", action="Tie laces")
    defaults.update(fields)
    return SegmentPrompt(**defaults)


ASSETS = FrameAssets(brand_logo_url="https://x/logo.png", product_image_urls=["https://x/p1.png", "https://x/p2.png"])


def test_continuation_wins_over_brand_and_product():
    prompt = _prompt(is_continuation_from_prev=True, contains_brand=True, contains_product=True)

    request = build_frame_request(prompt, 1, FrameType.FIRST, "16:9", ASSETS, "https://x/prev.png")

    assert request.mode == "continuation"
    assert request.references == ["https://x/prev.png", "https://x/logo.png", "https://x/p1.png", "https://x/p2.png"]


def test_continuation_only_applies_to_opening_frame():
    prompt = _prompt(is_continuation_from_prev=True, contains_brand=True)
    request = build_frame_request(prompt, 1, FrameType.CLOSING, "16:9", ASSETS, "https://x/prev.png")
    assert request.mode == "brand"
    assert request.references == ["https://x/logo.png"]


def test_product_route_and_text_fallback():
    product = build_frame_request(_prompt(contains_product=True), 0, FrameType.FIRST, "9:16", ASSETS)
    assert product.mode == "product"
    assert product.aspect_ratio == "9:16"

    no_photos = build_frame_request(_prompt(contains_product=True), 0, FrameType.FIRST, "16:9", FrameAssets())
    assert no_photos.mode == "text"
    assert no_photos.references == []
    assert "image_input" not in no_photos.to_input()


def test_clone_mode_short_circuits_routing():
    assets = FrameAssets(brand_logo_url="https://x/logo.png", product_image_urls=["https://x/p1.png"],
                         competitor_file_type="video")
    request = build_frame_request(_prompt(contains_brand=True), 0, FrameType.FIRST, "16:9", assets)

    assert request.mode == "clone"
    assert request.prompt == "Runner laces shoes on a wet city street"
    assert request.references == ["https://x/p1.png"]


def test_references_are_deduplicated_and_capped():
    urls = [f"https://x/{i}.png" for i in range(12)] + ["https://x/0.png"]
    assets = FrameAssets(product_image_urls=urls)
    request = build_frame_request(_prompt(contains_product=True), 0, FrameType.FIRST, "16:9", assets)
    assert len(request.references) == 10
    assert len(set(request.references)) == 10


def test_request_input_shape():
    payload = build_frame_request(_prompt(contains_product=True), 0, FrameType.FIRST, "16:9", ASSETS).to_input()
    assert payload["resolution"] == "1K"
    assert payload["output_format"] == "png"
    assert payload["image_input"] == ["https://x/p1.png", "https://x/p2.png"]


def test_parse_frame_record():
    done = parse_frame_record({"state": "success", "resultJson": '{"resultUrls": ["https://x/f.png"]}'})
    assert done.state == JobState.SUCCESS
    assert done.url == "https://x/f.png"

    assert parse_frame_record({"state": "fail"}).state == JobState.FAILED
    assert parse_frame_record({"state": "generating"}).state == JobState.PENDING
    assert parse_frame_record({"state": "success"}).state == JobState.PENDING


def test_submit_uses_image_model():
    with patch("adclone.pipeline.frame_director.kie.create_task", AsyncMock(return_value="task-9")) as create:
        task_id = asyncio.run(FrameDirector().submit(_prompt(), 0, FrameType.FIRST, "16:9"))

    assert task_id == "task-9"
    model, payload = create.await_args.args
    assert model == "nano-banana-pro"
    assert "Segment 1 opening frame" in payload["prompt"]
