import json

from batch_convert import BatchDAEConverter, main

from conftest import rig_document


def test_batch_process(tmp_path):
    input_folder = tmp_path / "input"
    (input_folder / "characters").mkdir(parents=True)
    (input_folder / "characters" / "rig.dae").write_text(rig_document(), encoding="utf-8")
    (input_folder / "broken.dae").write_text("<COLLADA>", encoding="utf-8")

    converter = BatchDAEConverter(input_folder, tmp_path / "output")
    assert converter.batch_process() == 1

    payload = json.loads((tmp_path / "output" / "rig.json").read_text(encoding="utf-8"))
    assert payload["top"] == {"Quad": "Quad-mesh", "QuadSkin": "Quad-skin"}
    assert not (tmp_path / "output" / "broken.json").exists()


def test_empty_folder(tmp_path):
    (tmp_path / "input").mkdir()
    assert BatchDAEConverter(tmp_path / "input", tmp_path / "output").batch_process() == 0


def test_main_with_nodes(tmp_path):
    (tmp_path / "in").mkdir()
    (tmp_path / "in" / "rig.dae").write_text(rig_document(), encoding="utf-8")

    assert main([str(tmp_path / "in"), str(tmp_path / "out"), "--nodes", "--vertex-format", "p3n3"]) == 0

    payload = json.loads((tmp_path / "out" / "rig.json").read_text(encoding="utf-8"))
    assert [n["id"] for n in payload["nodes"]] == ["Quad", "Armature", "Skinned"]
    assert payload["meshes"][0]["vertex_format_name"] == "p3n3"
