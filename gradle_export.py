"""
Prepares an engine project's Android Gradle build tree for a custom build.

The Gradle project itself is installed separately into <project>/android/build.  This module fills it in before
Gradle is invoked:

* writes the merge manifest fragments for the export preset,
* writes the localized project name string resources,
* writes the launcher icons,
* creates one Gradle module per asset pack and moves the exported assets into it,
* patches the root build.gradle and settings.gradle to include those modules.

Notes:
The asset pack config file uses three lines per pack: the pack's folder relative to the project, the delivery mode
digit (0 = install-time, 1 = fast-follow, 2 = on-demand) and the module name.  For example::

    assets/levels
    1
    levels_pack

Malformed config files and Gradle files without their ASSET_PACK_INFO markers stop the export.  Files that cannot be
moved or copied into an asset pack module do not; they are returned as CopyOrRenameFailure items so the caller can
report them together.

Running Gradle is not handled here.
"""
import argparse
from collections import OrderedDict
from collections.abc import Mapping
from enum import IntEnum
import os
import PIL.Image as Image
import re
import shutil
import sys
from types import MappingProxyType
from typing import Iterable, List, NamedTuple, Tuple
from xml.sax.saxutils import escape

__version__ = "0.1"

# Relative to the project folder.
GRADLE_BUILD_FOLDER = os.path.join("android", "build")

ASSET_PACK_INFO_START = "//ASSET_PACK_INFO_START !!!DO NOT EDIT THIS LINE!!!"
ASSET_PACK_INFO_END = "//ASSET_PACK_INFO_END !!!DO NOT EDIT THIS LINE!!!"

# Everything else in the build folder is removed when cleaning.
GRADLE_PROJECT_FILES = frozenset([
    "res",
    "AndroidManifest.xml",
    "config.gradle",
    "libs",
    "gradle",
    "gradlew",
    ".gdignore",
    "build.gradle",
    "gradle.properties",
    "gradlew.bat",
    "settings.gradle",
    "src",
])

# Asset pack module names that would land in the base Gradle project's own folders.
RESERVED_MODULE_NAMES = frozenset(name.lower() for name in GRADLE_PROJECT_FILES | {"app", "assets", "build"})

# Archives that are not exported as resources and must be copied from the project folder.
PACK_FILE_EXTENSIONS = (".pck", ".zip")

PROJECT_NAME_STRING_FILE = "godot_project_name_string.xml"

PROJECT_NAME_XML = '''<?xml version="1.0" encoding="utf-8"?>
<!--WARNING: THIS FILE WILL BE OVERWRITTEN AT BUILD TIME-->
<resources>
	<string name="godot_project_name_string">{}</string>
</resources>
'''

ASSET_PACK_BUILD_GRADLE = '''apply plugin: 'com.android.asset-pack'

assetPack {{
    packName = "{name}"
    dynamicDelivery {{
        deliveryType = "{delivery_type}"
    }}
}}
'''

# (preset option, file name, [(resource folder, size), ...])
LAUNCHER_ICONS = [
    ("launcher_icons/main_192x192", "icon.png", [
        ("mipmap-xxxhdpi-v4", 192),
        ("mipmap-xxhdpi-v4", 144),
        ("mipmap-xhdpi-v4", 96),
        ("mipmap-hdpi-v4", 72),
        ("mipmap-mdpi-v4", 48),
        ("mipmap", 192),
    ]),
    ("launcher_icons/adaptive_foreground_432x432", "icon_foreground.png", [
        ("mipmap-xxxhdpi-v4", 432),
        ("mipmap-xxhdpi-v4", 324),
        ("mipmap-xhdpi-v4", 216),
        ("mipmap-hdpi-v4", 162),
        ("mipmap-mdpi-v4", 108),
        ("mipmap", 432),
    ]),
    ("launcher_icons/adaptive_background_432x432", "icon_background.png", [
        ("mipmap-xxxhdpi-v4", 432),
        ("mipmap-xxhdpi-v4", 324),
        ("mipmap-xhdpi-v4", 216),
        ("mipmap-hdpi-v4", 162),
        ("mipmap-mdpi-v4", 108),
        ("mipmap", 432),
    ]),
]

# Export preset options that the engine always defines, with the engine's defaults.
DEFAULT_OPTIONS = {
    "custom_template/use_custom_build": False,
    "version/code": 1,
    "version/name": "1.0",
    "package/unique_name": "org.godotengine.$genname",
    "package/name": "",
    "launcher_icons/main_192x192": "",
    "launcher_icons/adaptive_foreground_432x432": "",
    "launcher_icons/adaptive_background_432x432": "",
    "screen/orientation": 0,
    "screen/support_small": True,
    "screen/support_normal": True,
    "screen/support_large": True,
    "screen/support_xlarge": True,
    "xr_features/xr_mode": 0,
    "xr_features/degrees_of_freedom": 0,
    "xr_features/hand_tracking": 0,
    "xr_features/focus_awareness": False,
    "permissions/custom_permissions": (),
}

# Project settings read by the exporter, with the engine's defaults.
DEFAULT_SETTINGS = {
    "application/config/name": "",
    "application/config/icon": "",
    "rendering/quality/driver/driver_name": "GLES3",
    "rendering/quality/driver/fallback_to_gles2": False,
}


class ExportError(Exception):
    """Base class for errors that stop the export."""


class CreateError(ExportError, OSError):
    """A directory or file could not be created or written."""


class ConfigNotFoundError(ExportError, FileNotFoundError):
    """A config file could not be opened."""


class MalformedConfigError(ExportError, ValueError):
    """A config file could not be parsed."""


class MalformedTemplateError(ExportError, ValueError):
    """A Gradle file is missing a marker that it is supposed to have."""


class CopyOrRenameFailure(ExportError):
    """
    A file or folder could not be moved or copied into an asset pack module.

    These are collected and returned rather than raised.
    """
    def __init__(self, source: str, destination: str, reason: str):
        super().__init__(source, destination, reason)
        self.source = source
        self.destination = destination
        self.reason = reason

    def __str__(self):
        return f'Could not copy or move "{self.source}" to "{self.destination}": {self.reason}'


class AssetPackDeliveryMode(IntEnum):
    """When an asset pack becomes available relative to the app install."""
    INSTALL_TIME = 0
    FAST_FOLLOW = 1
    ON_DEMAND = 2

    @classmethod
    def from_digit(cls, text: str):
        """Parses the single digit used by the asset pack config file."""
        if len(text) != 1 or text not in "012":
            raise MalformedConfigError(f'Invalid delivery mode "{text}", expected 0, 1 or 2.')
        return cls(int(text))

    @property
    def gradle_name(self):
        return _DELIVERY_TYPE_NAMES[self]


_DELIVERY_TYPE_NAMES = {
    AssetPackDeliveryMode.INSTALL_TIME: "install-time",
    AssetPackDeliveryMode.FAST_FOLLOW: "fast-follow",
    AssetPackDeliveryMode.ON_DEMAND: "on-demand",
}


class Orientation(IntEnum):
    LANDSCAPE = 0
    PORTRAIT = 1


class XrMode(IntEnum):
    REGULAR = 0
    OVR = 1


class DegreesOfFreedom(IntEnum):
    NONE = 0
    THREE_AND_SIX_DOF = 1  # Head tracking is optional.
    SIX_DOF = 2  # Head tracking is required.


class HandTracking(IntEnum):
    NONE = 0
    OPTIONAL = 1
    REQUIRED = 2


class AssetPackInfo(NamedTuple):
    """One asset pack module read from the asset pack config file."""
    file_path: str  # Relative to the project folder, always with forward slashes.
    delivery_mode: AssetPackDeliveryMode
    name: str


def _rmtree(folder):
    """Ignores the error when the given folder doesn't exist, but raises all other errors."""
    try:
        shutil.rmtree(folder)
    except FileNotFoundError:
        if os.path.lexists(folder):
            raise


def _xml_escape(text: str) -> str:
    return escape(text, {'"': "&quot;", "'": "&apos;"})


def _normalize_res_path(path: str) -> str:
    """Turns 'res://a/b/', '/a/b' or 'a\\b' into 'a/b'."""
    if path.startswith("res://"):
        path = path[len("res://"):]
    return path.replace("\\", "/").strip("/")


def _globalize_path(project_path: str, path: str) -> str:
    """Resolves a 'res://' or project-relative path to a path on disk."""
    if path.startswith("res://") or not os.path.isabs(path):
        return os.path.join(project_path, *_normalize_res_path(path).split("/"))
    return path


def _split_setting_name(name: str) -> Tuple[str, str]:
    """Project settings use the first path component as the config file section."""
    section, _, key = name.partition("/")
    if not key:
        return "", section
    return section, key


def _parse_value(value: str):
    """Decodes a value from the engine's config files."""
    if value == "true":
        return True
    if value == "false":
        return False
    if re.fullmatch(r"-?\d+", value):
        return int(value)
    if re.fullmatch(r"-?\d+\.\d*(e[-+]?\d+)?", value):
        return float(value)
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return re.sub(r'\\(.)', r'\1', value[1:-1], flags=re.DOTALL)
    match = re.fullmatch(r"PoolStringArray\((.*)\)", value, flags=re.DOTALL)
    if match:
        return tuple(re.sub(r'\\(.)', r'\1', item, flags=re.DOTALL)
                     for item in re.findall(r'"((?:[^"\\]|\\.)*)"', match.group(1), flags=re.DOTALL))
    return value


def _is_value_complete(value: str) -> bool:
    """
    Checks whether a value read so far is complete or continues on the next line.

    Values such as input maps ("{...}"), arrays and multi-line strings span several lines.  A value is complete once
    every quote and bracket outside of a string is closed.
    """
    depth = 0
    in_string = False
    escaped = False
    for char in value:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char in "{[(":
            depth += 1
        elif char in "}])":
            depth -= 1
    return not in_string and depth <= 0


class ConfigFile:
    """Reads and provides access to the values within one of the engine's INI-style config files."""
    def __init__(self, filename: str = None):
        """
        Opens and loads the given config file.

        :param filename: The config file to open.  When not given, the config starts out empty.
        """
        self._sections = OrderedDict()
        self._filename = filename
        if filename:
            self._load(filename)

    def _load(self, filename):
        try:
            fp = open(filename, "r", encoding="utf-8")
        except FileNotFoundError:
            raise ConfigNotFoundError(f'Could not find config file "{filename}".')
        except OSError as e:
            raise ConfigNotFoundError(f'Could not open config file "{filename}": {e.strerror}')
        with fp:
            lines = fp.read().splitlines()
        section = ""
        index = 0
        while index < len(lines):
            line_number = index + 1
            line = lines[index].strip()
            index += 1
            if not line or line.startswith(";"):
                continue
            match = re.fullmatch(r"\[(.+)\]", line)
            if match:
                section = match.group(1)
                self._sections.setdefault(section, OrderedDict())
                continue
            key, separator, value = line.partition("=")
            if not separator:
                raise MalformedConfigError(f'{filename}:{line_number}: expected "key=value".')
            value = value.strip()
            # Multi-line values keep their line breaks.
            while not _is_value_complete(value):
                if index == len(lines):
                    raise MalformedConfigError(f'{filename}:{line_number}: value of "{key.strip()}" is never closed.')
                value += "\n" + lines[index]
                index += 1
            self[section, key.strip()] = _parse_value(value.strip())

    @property
    def filename(self):
        return self._filename

    def sections(self) -> List[str]:
        return list(self._sections.keys())

    def keys(self, section: str) -> List[str]:
        return list(self._sections.get(section, {}).keys())

    def has_section_key(self, section: str, key: str) -> bool:
        return key in self._sections.get(section, {})

    def get(self, section: str, key: str, default=None):
        return self._sections.get(section, {}).get(key, default)

    def __getitem__(self, item):
        section, key = item
        return self._sections[section][key]

    def __setitem__(self, key, value):
        section, key = key
        self._sections.setdefault(section, OrderedDict())[key] = value


class ProjectSettings(ConfigFile):
    """
    The project's settings, read from project.godot in the project folder.

    Settings are addressed by their full name, ie: "application/config/name", where the first part of the name is the
    config file section.
    """
    PROJECT_FILE = "project.godot"

    def __init__(self, base_path: str = None):
        super().__init__(os.path.join(base_path, ProjectSettings.PROJECT_FILE) if base_path else None)
        self._base_path = os.path.abspath(base_path) if base_path else ""

    @classmethod
    def from_dict(cls, settings: dict, base_path: str = ""):
        """Creates project settings from a dictionary of full setting names and values."""
        project_settings = cls()
        project_settings._base_path = base_path
        for name, value in settings.items():
            project_settings[_split_setting_name(name)] = value
        return project_settings

    @property
    def base_path(self):
        """The project folder."""
        return self._base_path

    @property
    def name(self) -> str:
        """The project name.  Defaults to the project folder name."""
        name = self.get_setting("application/config/name")
        if not name and self._base_path:
            name = os.path.basename(os.path.normpath(self._base_path))
        return name

    def has_setting(self, name: str) -> bool:
        """Whether the setting is set in the project.  Defaults do not count."""
        return self.has_section_key(*_split_setting_name(name))

    def get_setting(self, name: str, default=None):
        section, key = _split_setting_name(name)
        if self.has_section_key(section, key):
            return self[section, key]
        return DEFAULT_SETTINGS.get(name, default)


class ExportPreset(Mapping):
    """
    A read-only view of an export preset's options.

    Options missing from the preset fall back to DEFAULT_OPTIONS.
    """
    def __init__(self, options: dict = None, name: str = "Android"):
        self._name = name
        self._options = MappingProxyType(dict(options or {}))

    @classmethod
    def load(cls, filename: str, name: str = None):
        """
        Loads an Android preset from an export_presets.cfg file.

        :param filename: The export presets file.
        :param name: The preset name.  When not given, the first Android preset is used.
        :return: The export preset.
        """
        config = ConfigFile(filename)
        for section in config.sections():
            if not re.fullmatch(r"preset\.\d+", section):
                continue
            if config.get(section, "platform") != "Android":
                continue
            preset_name = config.get(section, "name", "")
            if name is not None and preset_name != name:
                continue
            options_section = f"{section}.options"
            options = {key: config[options_section, key] for key in config.keys(options_section)}
            return cls(options, name=preset_name)
        if name is not None:
            raise MalformedConfigError(f'No Android export preset named "{name}" in "{filename}".')
        raise MalformedConfigError(f'No Android export preset in "{filename}".')

    @property
    def name(self):
        return self._name

    def __getitem__(self, key):
        if key in self._options:
            return self._options[key]
        return DEFAULT_OPTIONS[key]

    def get(self, key):
        """Every preset option has a default, so an unknown key raises KeyError instead of returning None."""
        return self[key]

    def with_options(self, options: dict):
        """Returns a copy of this preset with the given options replaced."""
        merged = dict(self._options)
        merged.update(options)
        return ExportPreset(merged, name=self._name)

    def __iter__(self):
        yield from self._options
        yield from (key for key in DEFAULT_OPTIONS if key not in self._options)

    def __len__(self):
        return len(self._options) + len([key for key in DEFAULT_OPTIONS if key not in self._options])


# Manifest fragments.  These are merged into the Gradle project's AndroidManifest.xml by the Gradle manifest merger.

ANDROID_MANIFEST_TEXT = '''<?xml version="1.0" encoding="utf-8"?>
<manifest xmlns:android="http://schemas.android.com/apk/res/android"
    xmlns:tools="http://schemas.android.com/tools"
    package="PACKAGE_NAME_HERE"
    android:versionCode="VERSION_CODE_HERE"
    android:versionName="VERSION_NAME_HERE"
    android:installLocation="auto" >

    <!-- Adding custom text to the manifest is fine, but do it outside the custom USER and APPLICATION BEGIN/END comments, -->
    <!-- as that gets rewritten. -->

    <supports-screens
        android:smallScreens="SMALL_SCREENS_HERE"
        android:normalScreens="NORMAL_SCREENS_HERE"
        android:largeScreens="LARGE_SCREENS_HERE"
        android:xlargeScreens="X_LARGE_SCREENS_HERE" />

    <!-- glEsVersion is modified by the exporter, changing this value here has no effect. -->
    <uses-feature
        android:glEsVersion="GLES_VERSION_HERE"
        android:required="true" />

<!-- Custom user permissions XML added by add-ons. It's recommended to add them from the export preset, though. -->
<!--CHUNK_USER_PERMISSIONS_BEGIN-->
<!--CHUNK_USER_PERMISSIONS_END-->

    <!-- Any tag in this line after android:icon will be erased when doing custom builds. -->
    <!-- If you want to add tags manually, do before it. -->
    <!-- WARNING: This should stay on a single line until the parsing code is improved. See GH-32414. -->
    <application android:label="@string/godot_project_name_string" android:allowBackup="false" tools:ignore="GoogleAppIndexingWarning" android:icon="@mipmap/icon" >

        <!-- The following metadata values are replaced when Godot exports, modifying them here has no effect. -->
        <!-- Do these changes in the export preset. Adding new ones is fine. -->

        <!-- XR mode metadata. This is modified by the exporter based on the selected xr mode. DO NOT CHANGE the values here. -->
        <meta-data
            android:name="XR_MODE_METADATA_NAME"
            android:value="XR_MODE_METADATA_VALUE" />

        <!-- Metadata populated at export time and used by Godot to figure out which plugins must be enabled. -->
        <meta-data
            android:name="PLUGINS_HERE"
            android:value="PLUGINS_VALUES_HERE"/>

        <activity
            android:name=".GodotApp"
            android:label="@string/godot_project_name_string"
            android:theme="@android:style/Theme.Black.NoTitleBar.Fullscreen"
            android:launchMode="singleTask"
            android:screenOrientation="SCREEN_ORIENTATION_HERE"
            android:configChanges="orientation|keyboardHidden|screenSize|smallestScreenSize|density|keyboard|navigation|screenLayout|uiMode"
            android:resizeableActivity="false"
            tools:ignore="UnusedAttribute" >

            <!-- Focus awareness metadata populated at export time if the user enables it in the 'Xr Features' section. -->
            <meta-data
                android:name="com.oculus.vr.focusaware"
                android:value="oculus_focus_aware_value"/>

            <intent-filter>
                <action android:name="android.intent.action.MAIN" />
                <category android:name="android.intent.category.LAUNCHER" />
            </intent-filter>
        </activity>

<!-- Custom application XML added by add-ons. -->
<!--CHUNK_APPLICATION_BEGIN-->
<!--CHUNK_APPLICATION_END-->

    </application>

</manifest>'''


def bool_to_string(value) -> str:
    return "true" if value else "false"


def _uses_xr(preset: ExportPreset) -> bool:
    return int(preset["xr_features/xr_mode"]) == XrMode.OVR


def _get_orientation_name(preset: ExportPreset) -> str:
    return "portrait" if int(preset["screen/orientation"]) == Orientation.PORTRAIT else "landscape"


def _uses_gles3(settings: ProjectSettings) -> bool:
    return settings.get_setting("rendering/quality/driver/driver_name") == "GLES3" and \
        not settings.get_setting("rendering/quality/driver/fallback_to_gles2")


def get_package_name(preset: ExportPreset, settings: ProjectSettings) -> str:
    """
    Returns the preset's package name with "$genname" replaced by a name generated from the project name.

    The generated name is the lower case project name without anything but letters and digits, and without leading
    digits.
    """
    name = re.sub(r"[^a-z0-9]", "", str(settings.get_setting("application/config/name") or "").lower())
    name = name.lstrip("0123456789") or "noname"
    return str(preset["package/unique_name"]).replace("$genname", name)


def get_permissions(preset: ExportPreset) -> List[str]:
    """Lists the Android permissions enabled in the preset followed by its custom permissions."""
    permissions = []
    for key in preset:
        if key.startswith("permissions/") and key != "permissions/custom_permissions" and preset[key] is True:
            permissions.append(f"android.permission.{key[len('permissions/'):].upper()}")
    custom_permissions = preset["permissions/custom_permissions"]
    if isinstance(custom_permissions, str):
        custom_permissions = [custom_permissions]
    for permission in custom_permissions:
        permission = permission.strip()
        if permission and permission not in permissions:
            permissions.append(permission)
    return permissions


def get_gles_tag(settings: ProjectSettings) -> str:
    if _uses_gles3(settings):
        return '    <uses-feature android:glEsVersion="0x00030000" android:required="true" />\n'
    return ""


def get_screen_sizes_tag(preset: ExportPreset) -> str:
    manifest_screen_sizes = '    <supports-screens \n        tools:node="replace"'
    for size in ["small", "normal", "large", "xlarge"]:
        feature_support = bool_to_string(preset[f"screen/support_{size}"])
        manifest_screen_sizes += f'\n        android:{size}Screens="{feature_support}"'
    manifest_screen_sizes += " />\n"
    return manifest_screen_sizes


def get_xr_features_tag(preset: ExportPreset) -> str:
    """Head and hand tracking features.  Nothing is required unless the preset uses XR."""
    manifest_xr_features = ""
    if not _uses_xr(preset):
        return manifest_xr_features
    dof = int(preset["xr_features/degrees_of_freedom"])
    if dof in [DegreesOfFreedom.THREE_AND_SIX_DOF, DegreesOfFreedom.SIX_DOF]:
        manifest_xr_features += f'    <uses-feature tools:node="replace" android:name="android.hardware.vr.headtracking"' \
                                f' android:required="{bool_to_string(dof == DegreesOfFreedom.SIX_DOF)}"' \
                                f' android:version="1" />\n'
    hand_tracking = int(preset["xr_features/hand_tracking"])
    if hand_tracking in [HandTracking.OPTIONAL, HandTracking.REQUIRED]:
        manifest_xr_features += f'    <uses-feature tools:node="replace" android:name="oculus.software.handtracking"' \
                                f' android:required="{bool_to_string(hand_tracking == HandTracking.REQUIRED)}" />\n'
    return manifest_xr_features


def get_instrumentation_tag(preset: ExportPreset, settings: ProjectSettings = None) -> str:
    """
    :param preset: The export preset.
    :param settings: When given, "$genname" in the package name is resolved.  Otherwise the package name is used as-is.
    """
    package_name = get_package_name(preset, settings) if settings else preset["package/unique_name"]
    return ('    <instrumentation\n'
            '        tools:node="replace"\n'
            '        android:name=".GodotInstrumentation"\n'
            '        android:icon="@mipmap/icon"\n'
            '        android:label="@string/godot_project_name_string"\n'
            f'        android:targetPackage="{package_name}" />\n')


def get_plugins_tag(plugins_names: str) -> str:
    if plugins_names:
        return f'    <meta-data tools:node="replace" android:name="plugins" android:value="{plugins_names}" />\n'
    return '    <meta-data tools:node="remove" android:name="plugins" />\n'


def get_activity_tag(preset: ExportPreset) -> str:
    manifest_activity_text = f'        <activity android:name="com.godot.game.GodotApp" ' \
                             f'tools:replace="android:screenOrientation" ' \
                             f'android:screenOrientation="{_get_orientation_name(preset)}">\n'
    if _uses_xr(preset):
        focus_awareness = bool_to_string(preset["xr_features/focus_awareness"])
        manifest_activity_text += f'            <meta-data tools:node="replace" android:name="com.oculus.vr.focusaware"' \
                                  f' android:value="{focus_awareness}" />\n'
    else:
        manifest_activity_text += '            <meta-data tools:node="remove" android:name="com.oculus.vr.focusaware" />\n'
    manifest_activity_text += '        </activity>\n'
    return manifest_activity_text


def get_application_tag(preset: ExportPreset, plugins_names: str) -> str:
    manifest_application_text = '    <application android:label="@string/godot_project_name_string"\n' \
                                '        android:allowBackup="false" tools:ignore="GoogleAppIndexingWarning"\n' \
                                '        android:icon="@mipmap/icon">\n\n' \
                                '        <meta-data tools:node="remove" android:name="xr_mode_metadata_name" />\n'
    manifest_application_text += get_plugins_tag(plugins_names)
    if _uses_xr(preset):
        manifest_application_text += '        <meta-data tools:node="replace" ' \
                                     'android:name="com.samsung.android.vr.application.mode" android:value="vr_only" />\n'
    manifest_application_text += get_activity_tag(preset)
    manifest_application_text += '    </application>\n'
    return manifest_application_text


def get_manifest_text(preset: ExportPreset, settings: ProjectSettings, plugins_names: str = "",
                      permissions: Iterable[str] = None) -> str:
    """
    Builds the manifest that the Gradle manifest merger applies on top of the build template's manifest.

    :param preset: The export preset.
    :param settings: The project settings.
    :param plugins_names: Comma-separated names of the enabled plugins.
    :param permissions: The permissions to request.  Defaults to the preset's permissions.
    :return: The manifest XML.
    """
    if permissions is None:
        permissions = get_permissions(preset)
    manifest_text = '<?xml version="1.0" encoding="utf-8"?>\n' \
                    '<manifest xmlns:android="http://schemas.android.com/apk/res/android"\n' \
                    '    xmlns:tools="http://schemas.android.com/tools">\n'
    manifest_text += get_screen_sizes_tag(preset)
    manifest_text += get_gles_tag(settings)
    for permission in permissions:
        manifest_text += f'    <uses-permission android:name="{_xml_escape(permission)}" />\n'
    manifest_text += get_xr_features_tag(preset)
    manifest_text += get_instrumentation_tag(preset, settings)
    manifest_text += get_application_tag(preset, plugins_names)
    manifest_text += "</manifest>\n"
    return manifest_text


def fill_manifest_template(template: str, preset: ExportPreset, settings: ProjectSettings,
                           plugins_names: str = "", version_code: int = None, version_name: str = None) -> str:
    """
    Replaces the placeholders of a full manifest template, such as ANDROID_MANIFEST_TEXT.

    This does not use the merge fragments; the template already contains every tag.

    :param template: The manifest template.
    :param preset: The export preset.
    :param settings: The project settings.
    :param plugins_names: Comma-separated names of the enabled plugins.
    :param version_code: Overrides the preset's version code.
    :param version_name: Overrides the preset's version name.
    :return: The manifest XML.
    """
    uses_xr = _uses_xr(preset)
    replacements = [
        ("PACKAGE_NAME_HERE", get_package_name(preset, settings)),
        ("VERSION_CODE_HERE", str(version_code if version_code is not None else preset["version/code"])),
        ("VERSION_NAME_HERE", _xml_escape(str(version_name if version_name is not None else preset["version/name"]))),
        ("X_LARGE_SCREENS_HERE", bool_to_string(preset["screen/support_xlarge"])),
        ("SMALL_SCREENS_HERE", bool_to_string(preset["screen/support_small"])),
        ("NORMAL_SCREENS_HERE", bool_to_string(preset["screen/support_normal"])),
        ("LARGE_SCREENS_HERE", bool_to_string(preset["screen/support_large"])),
        ("GLES_VERSION_HERE", "0x00030000" if _uses_gles3(settings) else "0x00020000"),
        ("XR_MODE_METADATA_NAME", "com.samsung.android.vr.application.mode" if uses_xr else "xr_mode_metadata_name"),
        ("XR_MODE_METADATA_VALUE", "vr_only" if uses_xr else "xr_mode_metadata_value"),
        ("PLUGINS_VALUES_HERE", _xml_escape(plugins_names)),
        ("PLUGINS_HERE", "plugins"),
        ("SCREEN_ORIENTATION_HERE", _get_orientation_name(preset)),
        ("oculus_focus_aware_value", bool_to_string(uses_xr and preset["xr_features/focus_awareness"])),
    ]
    # X_LARGE_SCREENS_HERE must be replaced before LARGE_SCREENS_HERE.
    for find, replace in replacements:
        template = template.replace(find, replace)
    return template


# Files.

def create_directory(path: str):
    """Creates the directory and its parents.  Does nothing if it already exists."""
    if os.path.isdir(path):
        return
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise CreateError(f"Cannot create directory '{path}': {e.strerror or e}")


def store_file_at_path(path: str, data: bytes):
    """
    Writes data into a file at path, creating directories if necessary.

    Note: this will overwrite the file at path if it already exists.
    """
    create_directory(os.path.dirname(path) or ".")
    try:
        with open(path, "wb") as fp:
            fp.write(data)
    except OSError as e:
        raise CreateError(f"Cannot create file '{path}': {e.strerror or e}")


def store_string_at_path(path: str, data: str):
    """
    Writes the string into a UTF-8 file at path, creating directories if necessary.  Newlines are written as-is.

    Note: this will overwrite the file at path if it already exists.
    """
    create_directory(os.path.dirname(path) or ".")
    try:
        with open(path, "w", encoding="utf-8", newline="") as fp:
            fp.write(data)
    except OSError as e:
        raise CreateError(f"Cannot create file '{path}': {e.strerror or e}")


def _read_string_at_path(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8", newline="") as fp:
            return fp.read()
    except OSError as e:
        raise ConfigNotFoundError(f"Cannot read file '{path}': {e.strerror or e}")


def store_file_in_gradle_project(build_path: str, path: str, data: bytes) -> str:
    """
    Stores an exported resource file in the Gradle project's assets folder.

    :param build_path: The Gradle build folder.
    :param path: The resource path, ie: "res://levels/level1.scn".
    :param data: The file contents.
    :return: The path of the stored file.
    """
    dst_path = os.path.join(build_path, "assets", *_normalize_res_path(path).split("/"))
    store_file_at_path(dst_path, data)
    return dst_path


def write_tmp_manifest(build_path: str, preset: ExportPreset, settings: ProjectSettings, plugins_names: str = "",
                       debug: bool = True) -> str:
    """Writes the merge manifest for the debug or release build variant.  Returns its path."""
    manifest_path = os.path.join(build_path, "src", "debug" if debug else "release", "AndroidManifest.xml")
    print(f"Writing manifest: {manifest_path}")
    store_string_at_path(manifest_path, get_manifest_text(preset, settings, plugins_names))
    return manifest_path


def create_project_name_strings_files(build_path: str, settings: ProjectSettings, project_name: str) -> List[str]:
    """
    Creates the project name string resource for the default locale and for every "values-*" folder in the Gradle
    project's res folder.

    Folders are assumed to be named "values-<language>" or "values-<language>-r<region>".  A folder whose locale has no
    localized project name gets the default name.

    :param build_path: The Gradle build folder.
    :param settings: The project settings, used to find "application/config/name_<locale>".
    :param project_name: The default project name.
    :return: The paths of the files written.
    """
    res_path = os.path.join(build_path, "res")
    default_xml_string = PROJECT_NAME_XML.format(_xml_escape(project_name))
    default_path = os.path.join(res_path, "values", PROJECT_NAME_STRING_FILE)
    store_string_at_path(default_path, default_xml_string)
    written = [default_path]

    try:
        with os.scandir(res_path) as it:
            folders = [entry.name for entry in it if entry.is_dir() and entry.name.startswith("values-")]
    except OSError as e:
        raise CreateError(f"Cannot list resource folder '{res_path}': {e.strerror or e}")
    for folder in folders:
        locale = folder.replace("values-", "", 1).replace("-r", "_")
        setting_name = f"application/config/name_{locale}"
        locale_path = os.path.join(res_path, folder, PROJECT_NAME_STRING_FILE)
        if settings.has_setting(setting_name):
            locale_project_name = str(settings.get_setting(setting_name))
            store_string_at_path(locale_path, PROJECT_NAME_XML.format(_xml_escape(locale_project_name)))
        else:
            store_string_at_path(locale_path, default_xml_string)
        written.append(locale_path)
    return written


def copy_icons_to_gradle_project(build_path: str, preset: ExportPreset, settings: ProjectSettings,
                                 project_path: str = None) -> List[str]:
    """
    Scales the preset's launcher icons into the Gradle project's mipmap folders.

    The main icon falls back to the project icon.  Icons that aren't set are skipped.

    :param build_path: The Gradle build folder.
    :param preset: The export preset.
    :param settings: The project settings.
    :param project_path: Used to resolve "res://" icon paths.  Defaults to the project settings' folder.
    :return: The paths of the icons written.
    """
    if project_path is None:
        project_path = settings.base_path
    written = []
    for option, filename, sizes in LAUNCHER_ICONS:
        icon_path = preset[option]
        if not icon_path and option == "launcher_icons/main_192x192":
            icon_path = settings.get_setting("application/config/icon")
        if not icon_path:
            continue
        icon_path = _globalize_path(project_path, icon_path)
        if not os.path.exists(icon_path):
            print(f"Skipping launcher icon, could not find: {icon_path}")
            continue
        try:
            with Image.open(icon_path) as icon_image:
                icon_image.load()
                for folder, size in sizes:
                    scaled_image = icon_image.resize((size, size), Image.LANCZOS)
                    dst_path = os.path.join(build_path, "res", folder, filename)
                    create_directory(os.path.dirname(dst_path))
                    scaled_image.save(dst_path, "PNG")
                    written.append(dst_path)
        except CreateError:
            raise
        except OSError as e:
            raise CreateError(f"Cannot create launcher icon from '{icon_path}': {e}")
    return written


# Asset packs.

def read_asset_pack_config_file(filename: str) -> List[AssetPackInfo]:
    """
    Reads the asset pack config file.

    Each pack takes exactly three lines: the folder relative to the project, the delivery mode digit and the Gradle
    module name.  Blank lines are only allowed at the end of the file.

    :param filename: The config file.
    :return: The asset packs in file order.
    """
    try:
        with open(filename, "r", encoding="utf-8") as fp:
            lines = [line.strip() for line in fp.read().splitlines()]
    except FileNotFoundError:
        raise ConfigNotFoundError(f'Could not find asset pack config file "{filename}".')
    except OSError as e:
        raise ConfigNotFoundError(f'Could not open asset pack config file "{filename}": {e.strerror}')
    while lines and not lines[-1]:
        lines.pop()
    if len(lines) % 3:
        raise MalformedConfigError(f"{filename}: expected three lines per asset pack, found {len(lines)} lines.")

    asset_packs = []
    names = set()
    for index in range(0, len(lines), 3):
        path, mode, name = lines[index:index + 3]
        if not _normalize_res_path(path):
            raise MalformedConfigError(f"{filename}:{index + 1}: the asset pack path is empty.")
        try:
            delivery_mode = AssetPackDeliveryMode.from_digit(mode)
        except MalformedConfigError as e:
            raise MalformedConfigError(f"{filename}:{index + 2}: {e}")
        if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_\-]*", name):
            raise MalformedConfigError(f'{filename}:{index + 3}: invalid asset pack name "{name}".')
        if name.lower() in RESERVED_MODULE_NAMES:
            raise MalformedConfigError(f'{filename}:{index + 3}: "{name}" is part of the base Gradle project.')
        if name in names:
            raise MalformedConfigError(f'{filename}:{index + 3}: duplicate asset pack name "{name}".')
        names.add(name)
        asset_packs.append(AssetPackInfo(_normalize_res_path(path), delivery_mode, name))
    return asset_packs


def get_asset_pack_build_gradle(pack_info: AssetPackInfo) -> str:
    return ASSET_PACK_BUILD_GRADLE.format(name=pack_info.name, delivery_type=pack_info.delivery_mode.gradle_name)


def _get_pack_assets_path(build_path: str, name: str) -> str:
    return os.path.join(build_path, name, "src", "main", "assets")


def _copy_asset_directory_files(build_path: str, pack_info: AssetPackInfo) -> List[CopyOrRenameFailure]:
    """Moves the pack's exported assets from the build assets folder into the asset pack module."""
    asset_path_from = os.path.join(build_path, "assets", *pack_info.file_path.split("/"))
    asset_path_to = _get_pack_assets_path(build_path, pack_info.name)
    create_directory(os.path.dirname(asset_path_to))
    try:
        # rename won't replace a folder on Windows, even an empty one.
        if os.path.isdir(asset_path_to) and not os.listdir(asset_path_to):
            os.rmdir(asset_path_to)
        os.rename(asset_path_from, asset_path_to)
    except OSError as e:
        failure = CopyOrRenameFailure(asset_path_from, asset_path_to, e.strerror or str(e))
        return [failure]
    return []


def _handle_pack_files(build_path: str, project_path: str, pack_info: AssetPackInfo) -> List[CopyOrRenameFailure]:
    """
    Copies .pck and .zip files from the pack's project folder into the asset pack module.  These are never exported
    as resources so they are not in the build assets folder.

    Subfolders are kept.  Files already in the module are left alone.
    """
    source_path = os.path.join(project_path, *pack_info.file_path.split("/"))
    assets_path = _get_pack_assets_path(build_path, pack_info.name)
    if not os.path.isdir(source_path):
        failure = CopyOrRenameFailure(source_path, assets_path, "Source folder not found")
        return [failure]
    failures = []

    def _onerror(error):
        failures.append(CopyOrRenameFailure(error.filename, assets_path, error.strerror or str(error)))

    for root, dirs, files in os.walk(source_path, onerror=_onerror):
        for filename in files:
            if not filename.endswith(PACK_FILE_EXTENSIONS):
                continue
            src_file = os.path.join(root, filename)
            dst_file = os.path.join(assets_path, os.path.relpath(src_file, start=source_path))
            if os.path.exists(dst_file):
                continue
            try:
                os.makedirs(os.path.dirname(dst_file), exist_ok=True)
                shutil.copyfile(src_file, dst_file)
            except OSError as e:
                failure = CopyOrRenameFailure(src_file, dst_file, e.strerror or str(e))
                failures.append(failure)
    return failures


def create_asset_pack_folder(build_path: str, project_path: str, pack_info: AssetPackInfo) -> List[CopyOrRenameFailure]:
    """
    Creates the Gradle module for an asset pack: writes its build.gradle, moves the pack's exported assets into it and
    copies the pack's archive files into it.

    :param build_path: The Gradle build folder.
    :param project_path: The project folder.
    :param pack_info: The asset pack.
    :return: The files that could not be moved or copied.
    """
    print(f"Creating asset pack module: {pack_info.name} ({pack_info.delivery_mode.gradle_name})")
    store_string_at_path(os.path.join(build_path, pack_info.name, "build.gradle"), get_asset_pack_build_gradle(pack_info))
    failures = _copy_asset_directory_files(build_path, pack_info)
    failures += _handle_pack_files(build_path, project_path, pack_info)
    return failures


def replace_between_sentinels(text: str, replacement: str,
                              begin_tag: str = ASSET_PACK_INFO_START,
                              end_tag: str = ASSET_PACK_INFO_END,
                              filename: str = None) -> str:
    """
    Replaces everything between the begin tag and the end tag with a new line followed by the replacement.  The tags
    and everything outside of them are kept.

    :raises MalformedTemplateError: When either tag is missing or the end tag comes first.
    """
    where = f' in "{filename}"' if filename else ""
    begin = text.find(begin_tag)
    if begin == -1:
        raise MalformedTemplateError(f'Could not find "{begin_tag}"{where}.')
    start = begin + len(begin_tag)
    end = text.find(end_tag, start)
    if end == -1:
        if end_tag in text:
            raise MalformedTemplateError(f'"{end_tag}" comes before "{begin_tag}"{where}.')
        raise MalformedTemplateError(f'Could not find "{end_tag}"{where}.')
    return text[:start] + "\n" + replacement + text[end:]


def update_root_project_with_asset_pack_info(build_path: str, asset_packs: List[AssetPackInfo]):
    """
    Includes the asset pack modules in the root Gradle project's settings.gradle and lists them in its build.gradle.

    Both files are checked before either is written.
    """
    settings_gradle_string = "include ':app'\n" + "".join(f"include ':{pack.name}'\n" for pack in asset_packs)
    build_gradle_string = "assetPacks = [" + ", ".join(f'":{pack.name}"' for pack in asset_packs) + "]\n"

    build_gradle_path = os.path.join(build_path, "build.gradle")
    settings_gradle_path = os.path.join(build_path, "settings.gradle")
    build_gradle = replace_between_sentinels(_read_string_at_path(build_gradle_path), build_gradle_string,
                                             filename=build_gradle_path)
    settings_gradle = replace_between_sentinels(_read_string_at_path(settings_gradle_path), settings_gradle_string,
                                                filename=settings_gradle_path)
    print(f"Updating root project with {len(asset_packs)} asset pack(s)")
    store_string_at_path(build_gradle_path, build_gradle)
    store_string_at_path(settings_gradle_path, settings_gradle)


def handle_asset_packs(build_path: str, project_path: str,
                       config_filepath: str) -> Tuple[List[AssetPackInfo], List[CopyOrRenameFailure]]:
    """
    Creates a Gradle module for every asset pack in the config file and adds them to the root Gradle project.

    :param build_path: The Gradle build folder.
    :param project_path: The project folder.
    :param config_filepath: The asset pack config file.
    :return: Tuple of (asset packs, files that could not be moved or copied).
    """
    asset_packs = read_asset_pack_config_file(config_filepath)
    failures = []
    for pack_info in asset_packs:
        failures += create_asset_pack_folder(build_path, project_path, pack_info)
    update_root_project_with_asset_pack_info(build_path, asset_packs)
    return asset_packs, failures


def delete_asset_folders(build_path: str) -> List[str]:
    """
    Deletes everything in the Gradle build folder that is not part of the base Gradle project.

    :return: The names of the removed entries.
    """
    print(f"Cleaning Gradle build folder: {build_path}")
    try:
        with os.scandir(build_path) as it:
            entries = sorted(it, key=lambda e: e.name)
    except FileNotFoundError:
        raise ConfigNotFoundError(f'Could not find the Gradle build folder "{build_path}".')
    except OSError as e:
        raise CreateError(f"Cannot list Gradle build folder '{build_path}': {e.strerror or e}")
    removed = []
    for entry in entries:
        if entry.name in GRADLE_PROJECT_FILES:
            continue
        try:
            if entry.is_dir(follow_symlinks=False):
                _rmtree(entry.path)
            else:
                os.remove(entry.path)
        except OSError as e:
            raise CreateError(f"Cannot delete '{entry.path}': {e.strerror or e}")
        removed.append(entry.name)
    return removed


class GradleExport:
    def __init__(self,
                 project_path: str,
                 preset: ExportPreset,
                 settings: ProjectSettings = None,
                 plugins: Iterable[str] = (),
                 version_code: int = None,
                 version_name: str = None):
        """
        Prepares the Gradle build folder of a project for a custom Android build.

        :param project_path: The project folder.  The Gradle project is expected in android/build within it.
        :param preset: The Android export preset.
        :param settings: The project settings.  Loaded from the project folder when not given.
        :param plugins: The names of the enabled Android plugins.
        :param version_code: Overrides the preset's version code.
        :param version_name: Overrides the preset's version name.
        """
        if version_code is not None and version_code < 1:
            raise ValueError("version_code must be a positive integer.")
        self._project_path = os.path.abspath(project_path)
        overrides = {}
        if version_code is not None:
            overrides["version/code"] = version_code
        if version_name is not None:
            overrides["version/name"] = version_name
        self.preset = preset.with_options(overrides) if overrides else preset
        self.settings = settings if settings is not None else ProjectSettings(self._project_path)
        self.plugins = list(plugins)
        self.warnings = []

    @property
    def project_path(self):
        return self._project_path

    @property
    def build_path(self):
        return os.path.join(self._project_path, GRADLE_BUILD_FOLDER)

    @property
    def plugins_names(self):
        return ",".join(self.plugins)

    def get_gradle_arguments(self) -> List[str]:
        """The project properties that the build template's build.gradle reads for the package and version."""
        return [
            f"-Pexport_package_name={get_package_name(self.preset, self.settings)}",
            f"-Pexport_version_code={self.preset['version/code']}",
            f"-Pexport_version_name={self.preset['version/name']}",
        ]

    def get_full_manifest_text(self, template: str = ANDROID_MANIFEST_TEXT) -> str:
        return fill_manifest_template(template, self.preset, self.settings, self.plugins_names,
                                      version_code=self.preset["version/code"],
                                      version_name=self.preset["version/name"])

    def clean(self) -> List[str]:
        return delete_asset_folders(self.build_path)

    def export_files(self, files: Iterable[Tuple[str, bytes]]) -> List[str]:
        """Stores exported resources, given as (resource path, data) pairs, in the Gradle project's assets."""
        return [store_file_in_gradle_project(self.build_path, path, data) for path, data in files]

    def export_project_name(self) -> List[str]:
        print(f"Writing project name strings: {self.settings.name}")
        return create_project_name_strings_files(self.build_path, self.settings, self.settings.name)

    def export_manifest(self, debug: bool = True) -> str:
        return write_tmp_manifest(self.build_path, self.preset, self.settings, self.plugins_names, debug)

    def export_icons(self) -> List[str]:
        return copy_icons_to_gradle_project(self.build_path, self.preset, self.settings, self._project_path)

    def export_asset_packs(self, config_filepath: str) -> List[AssetPackInfo]:
        asset_packs, failures = handle_asset_packs(self.build_path, self._project_path, config_filepath)
        if failures:
            print(f"{len(failures)} asset pack file(s) could not be moved or copied")
        self.warnings.extend(failures)
        return asset_packs

    def run(self, asset_pack_config: str = None, debug: bool = True, clean: bool = False,
            files: Iterable[Tuple[str, bytes]] = None) -> List[CopyOrRenameFailure]:
        """
        Runs every export step.

        :param asset_pack_config: The asset pack config file.  When not given, no asset pack modules are created.
        :param debug: Whether to write the debug or the release manifest.
        :param clean: Whether to delete everything but the base Gradle project first.  This also deletes the exported
            resources, so asset packs can only be built after a clean when the resources are given again in files.
        :param files: Exported resources, as (resource path, data) pairs, to store before the asset packs are built.
        :return: The files that could not be moved or copied.
        """
        if not os.path.isdir(self.build_path):
            raise ConfigNotFoundError(f'Could not find the Gradle build folder "{self.build_path}".  '
                                      f'Install the Android build template first.')
        if clean and asset_pack_config and files is None:
            raise ExportError("Cleaning deletes the exported resources that the asset packs are built from.  "
                              "Export the resources again after cleaning, or build the asset packs without cleaning.")
        self.warnings = []
        print(f"Preparing Gradle project for preset: {self.preset.name}")
        if clean:
            self.clean()
        if files is not None:
            self.export_files(files)
        self.export_project_name()
        self.export_manifest(debug)
        self.export_icons()
        if asset_pack_config:
            self.export_asset_packs(asset_pack_config)
        return list(self.warnings)


def _main(argv: List[str] = None) -> int:
    parser = argparse.ArgumentParser(description="Prepares a project's Android Gradle build folder for a custom build.")
    parser.add_argument("project", metavar="project", type=str,
                        help="The project folder, containing project.godot and export_presets.cfg.")
    parser.add_argument("--preset", type=str, default=None,
                        help="The Android export preset name.  Defaults to the first Android preset.")
    parser.add_argument("--asset-packs", type=str, default=None, help="The asset pack config file.")
    parser.add_argument("--plugins", type=str, default="", help="Comma-separated names of the enabled plugins.")
    parser.add_argument("--release", action="store_true", help="Write the release manifest instead of the debug one.")
    parser.add_argument("--clean", action="store_true",
                        help="Delete everything but the base Gradle project from the build folder first.  "
                             "Cannot be combined with --asset-packs.")
    parser.add_argument("--version-code", type=int, default=None, help="Overrides the preset's version code.")
    parser.add_argument("--version-name", type=str, default=None, help="Overrides the preset's version name.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)
    if args.version_code is not None and args.version_code < 1:
        parser.error("--version-code must be a positive integer.")

    try:
        settings = ProjectSettings(args.project)
        preset = ExportPreset.load(os.path.join(args.project, "export_presets.cfg"), args.preset)
        plugins = [name.strip() for name in args.plugins.split(",") if name.strip()]
        export = GradleExport(args.project, preset, settings=settings, plugins=plugins,
                              version_code=args.version_code, version_name=args.version_name)
        warnings = export.run(asset_pack_config=args.asset_packs, debug=not args.release, clean=args.clean)
    except ExportError as e:
        print(f"Error: {e}")
        return 1
    for warning in warnings:
        print(f"Warning: {warning}")
    print(f"Gradle arguments: {' '.join(export.get_gradle_arguments())}")
    print("Done.")
    return 0


if __name__ == "__main__":
    sys.exit(_main())
