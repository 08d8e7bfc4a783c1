import json
import re
from datetime import datetime
from pathlib import Path

from app.models.flyer import ImageRef, Placeholder, RunSummary

IMAGE_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}


class DebugSaver:
    """Saves intermediate states of a flyer run for debugging."""

    def __init__(self, debug_dir: Path, brief: str) -> None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        safe_brief = re.sub(r"[^\w\-]", "_", brief.strip())[:40] or "flyer"
        self.session_dir = debug_dir / f"{timestamp}_{safe_brief}"
        self.session_dir.mkdir(parents=True, exist_ok=True)

    def save_brief(self, brief: str) -> None:
        (self.session_dir / "00_brief.txt").write_text(brief, encoding="utf-8")

    def save_layout(self, markup: str) -> None:
        """Save the raw markup returned by the layout model."""
        (self.session_dir / "01_layout.html").write_text(markup, encoding="utf-8")

    def save_image(self, placeholder: Placeholder, stage: str, image: ImageRef) -> None:
        """Save an image produced for a placeholder (`generated` or `segmented`)."""
        extension = IMAGE_EXTENSIONS.get(image.mime_type, ".bin")
        path = self.session_dir / f"{placeholder.index + 1:02d}_{stage}{extension}"
        path.write_bytes(image.data)

    def save_final_result(
        self, html: str, summary: RunSummary, placeholders: list[Placeholder]
    ) -> None:
        (self.session_dir / "final.html").write_text(html, encoding="utf-8")
        self._save_json(
            {
                "summary": {
                    "total": summary.total,
                    "completed": summary.completed,
                    "failed": summary.failed,
                    "degraded": summary.degraded,
                },
                "placeholders": [
                    {
                        "index": p.index,
                        "prompt": p.prompt,
                        "transparent": p.transparent,
                        "width": p.width,
                        "height": p.height,
                        "state": p.state.value,
                        "failure_reason": p.failure_reason,
                        "background_removed": p.background_removed,
                    }
                    for p in placeholders
                ],
            },
            self.session_dir / "final_result.json",
        )

    def _save_json(self, data: dict | list, path: Path) -> None:
        """Save JSON data to file."""
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
