import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path for pipeline imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import settings
from logging_utils import setup_logging
from pipeline.detector import FaceDetector
from pipeline.workflow import SearchWorkflow, Step
from services.face_search import FaceSearchService


def print_state(state):
    if state.error:
        print(f"error: {state.error}")
    if state.step is Step.SELECT:
        for i, face in enumerate(state.faces, start=1):
            b = face.bbox
            print(f"[{i}] {face.id} conf={face.confidence:.2f} box=({b.x:.0f},{b.y:.0f},{b.width:.0f}x{b.height:.0f})")
    if state.step is Step.RESULTS and state.pagination:
        p = state.pagination
        print(f"page {p.page}/{max(p.total_pages, 1)} total={p.total} ({state.search_duration_ms}ms)")
        for r in state.results:
            payload = r.payload
            label = (payload.name or payload.original_url or payload.face_image_url) if payload else None
            print(f"{r.id} score={r.score:.3f} {label or ''}")


async def run(args) -> int:
    detector = FaceDetector(settings)
    detector.load()
    service = FaceSearchService.from_settings(settings)
    workflow = SearchWorkflow(detector, service, limit=args.limit, threshold=args.threshold)
    try:
        state = await workflow.upload(Path(args.image).read_bytes())
        print_state(state)

        if state.step is Step.SELECT:
            choice = args.face or int(input(f"choose a face [1-{len(state.faces)}]: "))
            state = await workflow.select_face(state.faces[choice - 1].id)
            print_state(state)

        while state.step is Step.RESULTS and args.interactive:
            answer = input("page number (empty to quit): ").strip()
            if not answer:
                break
            state = await workflow.change_page(int(answer))
            print_state(state)

        return 0 if state.step is Step.RESULTS else 1
    finally:
        await service.aclose()


def main():
    ap = argparse.ArgumentParser(description="Search the face index with a local photo")
    ap.add_argument("--image", required=True)
    ap.add_argument("--face", type=int, default=None, help="1-based face to use when several are found")
    ap.add_argument("--limit", type=int, default=settings.SEARCH_DEFAULT_LIMIT)
    ap.add_argument("--threshold", type=float, default=settings.SEARCH_DEFAULT_THRESHOLD)
    ap.add_argument("--interactive", action="store_true", help="page through results")
    args = ap.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
