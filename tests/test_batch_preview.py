from PIL import Image

import mdx_builder as mb
from batch_preview import MDXPreviewRenderer, main


def test_batch_renders_one_jpg_per_model(tmp_path):
    models = tmp_path / "models"
    models.mkdir()
    (models / "tri.mdx").write_bytes(mb.triangle_model())
    (models / "broken.mdx").write_bytes(b"NOPE")
    out = tmp_path / "out"

    renderer = MDXPreviewRenderer(models, out, size=(64, 48))
    assert renderer.batch_process() == 1

    image = Image.open(out / "tri_iso.jpg")
    assert image.size == (64, 48)
    assert not (out / "broken_iso.jpg").exists()


def test_output_folder_is_cleaned(tmp_path):
    out = tmp_path / "out"
    out.mkdir()
    (out / "stale.jpg").write_bytes(b"old")
    MDXPreviewRenderer(tmp_path, out)
    assert not (out / "stale.jpg").exists()


def test_main_accepts_flags(tmp_path, capsys):
    models = tmp_path / "models"
    models.mkdir()
    (models / "tri.mdx").write_bytes(mb.triangle_model())
    assert main([str(models), str(tmp_path / "out"), "--frame", "300", "--seed", "3"]) == 0
    assert "Completed: 1/1" in capsys.readouterr().out


def test_main_reports_failed_models(tmp_path):
    models = tmp_path / "models"
    models.mkdir()
    (models / "tri.mdx").write_bytes(mb.triangle_model())
    (models / "broken.mdx").write_bytes(b"NOPE")
    assert main([str(models), str(tmp_path / "out")]) == 1
