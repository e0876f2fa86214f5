"""Unit tests for writing files into the Gradle project."""

import os
import shutil
import tempfile
from unittest.mock import patch

import pytest
from PIL import Image

from gradle_export import (
    CreateError,
    ExportPreset,
    PROJECT_NAME_STRING_FILE,
    ProjectSettings,
    copy_icons_to_gradle_project,
    create_directory,
    create_project_name_strings_files,
    get_manifest_text,
    store_file_at_path,
    store_file_in_gradle_project,
    store_string_at_path,
    write_tmp_manifest,
)


def _read_text(path):
    with open(path, "r", encoding="utf-8", newline="") as fp:
        return fp.read()


def _project_name_xml(name):
    return '<?xml version="1.0" encoding="utf-8"?>\n' \
           '<!--WARNING: THIS FILE WILL BE OVERWRITTEN AT BUILD TIME-->\n' \
           '<resources>\n' \
           f'\t<string name="godot_project_name_string">{name}</string>\n' \
           '</resources>\n'


class TestFileWriter:
    """Tests for create_directory, store_file_at_path and store_string_at_path."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_create_directory_recursive(self):
        path = os.path.join(self.temp_dir, "a", "b", "c")
        create_directory(path)
        assert os.path.isdir(path)
        # Existing directories are fine.
        create_directory(path)
        assert os.path.isdir(path)

    def test_create_directory_over_file(self):
        path = os.path.join(self.temp_dir, "file")
        store_string_at_path(path, "x")
        with pytest.raises(CreateError):
            create_directory(os.path.join(path, "child"))

    def test_store_file_round_trip(self):
        path = os.path.join(self.temp_dir, "deep", "folder", "data.bin")
        data = bytes(range(256)) * 4
        store_file_at_path(path, data)
        with open(path, "rb") as fp:
            assert fp.read() == data

    def test_store_string_round_trip(self):
        path = os.path.join(self.temp_dir, "deep", "strings.txt")
        text = "line one\nline two\r\nunicode: é世界\n"
        store_string_at_path(path, text)
        assert _read_text(path) == text

    def test_overwrites_existing_file(self):
        path = os.path.join(self.temp_dir, "file.txt")
        store_string_at_path(path, "a much longer first version")
        store_string_at_path(path, "short")
        assert _read_text(path) == "short"
        store_file_at_path(path, b"")
        assert os.path.getsize(path) == 0

    def test_open_failure_raises_create_error(self):
        path = os.path.join(self.temp_dir, "file.txt")
        with patch("builtins.open", side_effect=PermissionError(13, "Permission denied")):
            with pytest.raises(CreateError) as exc_info:
                store_string_at_path(path, "text")
        assert isinstance(exc_info.value, OSError)

    def test_store_file_in_gradle_project(self):
        build_path = os.path.join(self.temp_dir, "android", "build")
        path = store_file_in_gradle_project(build_path, "res://levels/level1.scn", b"level")
        assert path == os.path.join(build_path, "assets", "levels", "level1.scn")
        with open(path, "rb") as fp:
            assert fp.read() == b"level"


class TestProjectNameStrings:
    """Tests for create_project_name_strings_files."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.build_path = os.path.join(self.temp_dir, "android", "build")
        self.res_path = os.path.join(self.build_path, "res")
        for folder in ["values", "values-fr", "values-pt-rBR", "values-de", "drawable"]:
            os.makedirs(os.path.join(self.res_path, folder))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _read_strings(self, folder):
        return _read_text(os.path.join(self.res_path, folder, PROJECT_NAME_STRING_FILE))

    def test_localized_names(self):
        settings = ProjectSettings.from_dict({
            "application/config/name": "Game",
            "application/config/name_fr": "Jeu",
            "application/config/name_pt_BR": "Jogo",
        })
        written = create_project_name_strings_files(self.build_path, settings, "Game")
        assert self._read_strings("values") == _project_name_xml("Game")
        assert self._read_strings("values-fr") == _project_name_xml("Jeu")
        assert self._read_strings("values-pt-rBR") == _project_name_xml("Jogo")
        # No localized name, so the default is used.
        assert self._read_strings("values-de") == _project_name_xml("Game")
        assert not os.path.exists(os.path.join(self.res_path, "drawable", PROJECT_NAME_STRING_FILE))
        assert len(written) == 4

    def test_names_are_escaped(self):
        settings = ProjectSettings.from_dict({"application/config/name_fr": "L'été <\"&\">"})
        create_project_name_strings_files(self.build_path, settings, "Tom & Jerry's")
        assert self._read_strings("values") == _project_name_xml("Tom &amp; Jerry&apos;s")
        assert self._read_strings("values-fr") == \
            _project_name_xml("L&apos;été &lt;&quot;&amp;&quot;&gt;")

    def test_overwrites_previous_files(self):
        settings = ProjectSettings.from_dict({})
        create_project_name_strings_files(self.build_path, settings, "Old Name")
        create_project_name_strings_files(self.build_path, settings, "New")
        assert self._read_strings("values-fr") == _project_name_xml("New")

    def test_unlistable_res_folder(self):
        with patch("gradle_export.os.scandir", side_effect=PermissionError(13, "Permission denied")):
            with pytest.raises(CreateError) as exc_info:
                create_project_name_strings_files(self.build_path, ProjectSettings.from_dict({}), "Game")
        assert "Permission denied" in str(exc_info.value)

    def test_creates_default_values_folder(self):
        shutil.rmtree(self.res_path)
        create_project_name_strings_files(self.build_path, ProjectSettings.from_dict({}), "Game")
        assert self._read_strings("values") == _project_name_xml("Game")


class TestTmpManifest:
    """Tests for write_tmp_manifest."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @pytest.mark.parametrize("debug, variant", [(True, "debug"), (False, "release")])
    def test_variant_folder(self, debug, variant):
        preset = ExportPreset({"package/unique_name": "com.example.game"})
        settings = ProjectSettings.from_dict({})
        path = write_tmp_manifest(self.temp_dir, preset, settings, "Admob", debug=debug)
        assert path == os.path.join(self.temp_dir, "src", variant, "AndroidManifest.xml")
        assert _read_text(path) == get_manifest_text(preset, settings, "Admob")


class TestLauncherIcons:
    """Tests for copy_icons_to_gradle_project."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.build_path = os.path.join(self.temp_dir, "android", "build")
        Image.new("RGBA", (512, 512), (255, 0, 0, 255)).save(os.path.join(self.temp_dir, "icon.png"))
        Image.new("RGBA", (600, 600), (0, 255, 0, 255)).save(os.path.join(self.temp_dir, "fg.png"))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _size(self, folder, filename):
        with Image.open(os.path.join(self.build_path, "res", folder, filename)) as image:
            return image.size

    def test_preset_icons(self):
        preset = ExportPreset({
            "launcher_icons/main_192x192": "res://icon.png",
            "launcher_icons/adaptive_foreground_432x432": "res://fg.png",
        })
        settings = ProjectSettings.from_dict({}, base_path=self.temp_dir)
        written = copy_icons_to_gradle_project(self.build_path, preset, settings)
        assert self._size("mipmap", "icon.png") == (192, 192)
        assert self._size("mipmap-mdpi-v4", "icon.png") == (48, 48)
        assert self._size("mipmap", "icon_foreground.png") == (432, 432)
        assert self._size("mipmap-xxhdpi-v4", "icon_foreground.png") == (324, 324)
        assert not os.path.exists(os.path.join(self.build_path, "res", "mipmap", "icon_background.png"))
        assert len(written) == 12

    def test_project_icon_fallback(self):
        settings = ProjectSettings.from_dict({"application/config/icon": "res://icon.png"})
        written = copy_icons_to_gradle_project(self.build_path, ExportPreset(), settings, self.temp_dir)
        assert self._size("mipmap-xxxhdpi-v4", "icon.png") == (192, 192)
        assert len(written) == 6

    def test_missing_icon_is_skipped(self):
        preset = ExportPreset({"launcher_icons/main_192x192": "res://missing.png"})
        settings = ProjectSettings.from_dict({}, base_path=self.temp_dir)
        assert copy_icons_to_gradle_project(self.build_path, preset, settings) == []

    def test_unreadable_icon(self):
        with open(os.path.join(self.temp_dir, "broken.png"), "wb") as fp:
            fp.write(b"not an image")
        preset = ExportPreset({"launcher_icons/main_192x192": "res://broken.png"})
        settings = ProjectSettings.from_dict({}, base_path=self.temp_dir)
        with pytest.raises(CreateError):
            copy_icons_to_gradle_project(self.build_path, preset, settings)
