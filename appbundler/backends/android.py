"""Android packages.

The app is built as a shared library and packed into an unsigned APK
skeleton: a plain-text manifest plus the native libraries under
``lib/<abi>/``. Signing and installing the APK are left to the Android
tooling.
"""

import zipfile
from dataclasses import dataclass
from xml.sax.saxutils import quoteattr

from ..context import BundlerContext, BundlerOutputStructure
from ..errors import PackagingError
from ..platforms import BundlerChoice
from .base import Bundler

ANDROID_MANIFEST_TEMPLATE = """\
<?xml version="1.0" encoding="utf-8"?>
<manifest xmlns:android="http://schemas.android.com/apk/res/android"
    package={identifier}
    android:versionName={version}>
  <uses-sdk android:minSdkVersion={min_sdk}/>
  <application android:label={label} android:hasCode="false">
    <activity android:name="android.app.NativeActivity" android:exported="true">
      <meta-data android:name="android.app.lib_name" android:value={library}/>
      <intent-filter>
        <action android:name="android.intent.action.MAIN"/>
        <category android:name="android.intent.category.LAUNCHER"/>
      </intent-filter>
    </activity>
  </application>
</manifest>
"""


@dataclass(frozen=True)
class AndroidContext:
    min_sdk_version: str


class AndroidAPKBundler(Bundler):
    """Packs the app's shared library into ``<App>.apk``."""

    choice = BundlerChoice.ANDROID_APK
    output_is_runnable = False
    requires_build_as_dylib = True

    def compute_context(
        self, context: BundlerContext, options, manifest
    ) -> AndroidContext:
        version = context.platform_version
        if version is None:
            version = context.platform.default_minimum_version
        return AndroidContext(min_sdk_version=version or "28")

    def intended_output(
        self, context: BundlerContext, additional: AndroidContext
    ) -> BundlerOutputStructure:
        return BundlerOutputStructure(
            bundle=context.output_directory / f"{context.app_name}.apk"
        )

    def bundle(
        self, context: BundlerContext, additional: AndroidContext
    ) -> BundlerOutputStructure:
        output = self.intended_output(context, additional)
        self.log.info("Bundling '%s'", output.bundle.name)
        app = context.app_configuration
        library_name = app.product
        manifest = ANDROID_MANIFEST_TEMPLATE.format(
            identifier=quoteattr(app.identifier),
            version=quoteattr(app.version),
            min_sdk=quoteattr(additional.min_sdk_version),
            label=quoteattr(context.app_name),
            library=quoteattr(library_name),
        )
        try:
            output.bundle.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(
                output.bundle, "w", compression=zipfile.ZIP_DEFLATED
            ) as apk:
                apk.writestr("AndroidManifest.xml", manifest)
                for architecture in context.architectures:
                    abi = architecture.android_abi
                    apk.write(
                        context.executable_to_bundle,
                        f"lib/{abi}/lib{library_name}.so",
                    )
                    for library in self.library_dependencies(context):
                        apk.write(library, f"lib/{abi}/{library.name}")
        except OSError as e:
            raise PackagingError(f"Failed to write '{output.bundle}'") from e
        return output
