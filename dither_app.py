from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import Callable

from PIL import Image, ImageOps, UnidentifiedImageError
from PySide6.QtCore import QObject, QSize, Qt, QTimer, Signal
from PySide6.QtGui import QAction, QColor, QImage, QKeySequence, QPixmap
from PySide6.QtWidgets import (
    QApplication,
    QColorDialog,
    QComboBox,
    QFileDialog,
    QFrame,
    QGridLayout,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QMainWindow,
    QMessageBox,
    QPushButton,
    QScrollArea,
    QSizePolicy,
    QSlider,
    QVBoxLayout,
    QWidget,
)

from dither_core import (
    ALGORITHM_LABELS,
    ALGORITHMS,
    DEFAULT_ALGORITHM,
    DitherConfig,
    default_resample_name,
    dither_image,
    format_color,
    parse_color,
)
from dither_cli import configure_logging

logger = logging.getLogger(__name__)

APP_NAME = "Dither Generator"
APP_VERSION = "1.0.0"
DEFAULT_EXPORT_NAME = "dithered-image.png"
PREVIEW_MAX_SIDE = 1600


def pil_to_qimage(image: Image.Image) -> QImage:
    if image.mode != "RGBA":
        image = image.convert("RGBA")
    data = image.tobytes("raw", "RGBA")
    qimage = QImage(data, image.width, image.height, QImage.Format_RGBA8888)
    return qimage.copy()


class RenderTracker:
    """Hands out generation numbers so only the newest render gets displayed."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._generation = 0

    def next(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    @property
    def current(self) -> int:
        with self._lock:
            return self._generation

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation


class RenderSignals(QObject):
    finished = Signal(int, object)
    failed = Signal(int, str)


def run_render(
    signals: RenderSignals,
    closed: threading.Event,
    generation: int,
    source: Image.Image,
    config: DitherConfig,
    resample: str,
) -> None:
    """Worker-thread body. Reports back through *signals* unless the window has closed."""
    try:
        result = dither_image(source, config, resample=resample)
    except Exception as exc:
        logger.exception("Render %d failed", generation)
        if not closed.is_set():
            signals.failed.emit(generation, str(exc))
        return
    if not closed.is_set():
        signals.finished.emit(generation, result)


class ZoomScrollArea(QScrollArea):
    def __init__(self, zoom_callback: Callable[[int], None], parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self._zoom_callback = zoom_callback

    def wheelEvent(self, event) -> None:
        delta = event.angleDelta().y()
        if delta != 0 and self._zoom_callback is not None:
            self._zoom_callback(delta)
            event.accept()
            return
        super().wheelEvent(event)


class DitherWindow(QMainWindow):
    def __init__(self) -> None:
        super().__init__()
        self.setWindowTitle(f"{APP_NAME} v{APP_VERSION}")
        self.resize(1200, 760)
        self.setStyleSheet(self._style_sheet())

        self.original_image: Image.Image | None = None
        self.preview_image: Image.Image | None = None
        self.processed_image: Image.Image | None = None
        self.resample = default_resample_name()
        self.zoom = 1.0
        self._update_scheduled = False
        self._tracker = RenderTracker()
        self._render_running = False
        self._render_pending = False
        self._closed = threading.Event()
        # No parent: a worker may still hold it after the window is gone.
        self._signals = RenderSignals()
        self._signals.finished.connect(self._finish_render)
        self._signals.failed.connect(self._fail_render)

        self._build_menu()

        root = QWidget()
        self.setCentralWidget(root)
        main_layout = QHBoxLayout(root)
        main_layout.setContentsMargins(12, 12, 12, 12)
        main_layout.setSpacing(12)

        controls = self._build_controls()
        control_scroll = QScrollArea()
        control_scroll.setWidget(controls)
        control_scroll.setWidgetResizable(True)
        control_scroll.setFrameShape(QFrame.NoFrame)
        control_scroll.setHorizontalScrollBarPolicy(Qt.ScrollBarAlwaysOff)
        control_scroll.setFixedWidth(360)
        main_layout.addWidget(control_scroll, 0)

        preview_panel = QWidget()
        preview_layout = QVBoxLayout(preview_panel)
        preview_layout.setContentsMargins(0, 0, 0, 0)
        preview_layout.addWidget(self._section_title("[PREVIEW]"))
        self.dimensions_label = QLabel("No image")
        self.dimensions_label.setObjectName("hint")
        preview_layout.addWidget(self.dimensions_label)
        self.preview_area = self._build_preview()
        preview_layout.addWidget(self.preview_area, 1)
        main_layout.addWidget(preview_panel, 1)

        self._update_export_actions()

    def _style_sheet(self) -> str:
        return """
        QMainWindow { background: #f4f4f0; }
        QWidget { color: #111111; font-family: "JetBrains Mono", "Consolas", monospace; font-size: 10pt; }
        #sidebar { background: #ffffff; border: 4px solid #111111; }
        QLabel#sectionTitle { font-size: 9pt; font-weight: 700; letter-spacing: 1px; }
        QLabel#logo { font-size: 17pt; font-weight: 700; letter-spacing: 2px; }
        QLabel#hint { color: #5c5c5c; font-size: 9pt; }

        QPushButton {
            background: #ffffff;
            border: 2px solid #111111;
            padding: 7px 12px;
            font-weight: 700;
        }
        QPushButton:hover { background: #111111; color: #ffffff; }
        QPushButton:disabled { color: #9a9a9a; border-color: #9a9a9a; }

        QComboBox, QLineEdit {
            background: #ffffff;
            border: 2px solid #111111;
            padding: 5px 8px;
        }
        QComboBox QAbstractItemView { background: #ffffff; border: 2px solid #111111; }

        QSlider::groove:horizontal { height: 6px; background: #d8d8d2; }
        QSlider::handle:horizontal { width: 14px; margin: -5px 0; background: #111111; }
        QSlider::sub-page:horizontal { background: #111111; }

        QScrollArea { background: #e6e6e0; border: 4px solid #111111; }
        QFrame#divider { background: #111111; max-height: 2px; }
        """

    def _build_menu(self) -> None:
        menu_bar = self.menuBar()
        file_menu = menu_bar.addMenu("File")
        edit_menu = menu_bar.addMenu("Edit")
        help_menu = menu_bar.addMenu("Help")

        import_action = QAction("Import", self)
        import_action.setShortcut(QKeySequence.Open)
        self.export_image_action = QAction("Export Image", self)
        self.export_image_action.setShortcut(QKeySequence.Save)
        reset_action = QAction("Reset All", self)
        zoom_in_action = QAction("Zoom In", self)
        zoom_in_action.setShortcut(QKeySequence("Ctrl+="))
        zoom_out_action = QAction("Zoom Out", self)
        zoom_out_action.setShortcut(QKeySequence("Ctrl+-"))
        reset_zoom_action = QAction("Reset Zoom", self)
        reset_zoom_action.setShortcut(QKeySequence("Ctrl+0"))
        quit_action = QAction("Quit", self)
        about_action = QAction("About", self)
        shortcuts_action = QAction("Shortcuts", self)

        import_action.triggered.connect(self.import_image)
        self.export_image_action.triggered.connect(self.export_image)
        reset_action.triggered.connect(self.reset_controls)
        zoom_in_action.triggered.connect(self.zoom_in)
        zoom_out_action.triggered.connect(self.zoom_out)
        reset_zoom_action.triggered.connect(self.reset_zoom)
        quit_action.triggered.connect(self.close)
        about_action.triggered.connect(self.show_about)
        shortcuts_action.triggered.connect(self.show_shortcuts)

        file_menu.addAction(import_action)
        file_menu.addAction(self.export_image_action)
        file_menu.addSeparator()
        file_menu.addAction(quit_action)

        edit_menu.addAction(reset_action)
        edit_menu.addSeparator()
        edit_menu.addAction(zoom_in_action)
        edit_menu.addAction(zoom_out_action)
        edit_menu.addAction(reset_zoom_action)

        help_menu.addAction(about_action)
        help_menu.addAction(shortcuts_action)

    def _build_preview(self) -> QScrollArea:
        self.image_label = QLabel("No image loaded")
        self.image_label.setAlignment(Qt.AlignCenter)
        self.image_label.setMinimumSize(500, 400)
        self.image_label.setSizePolicy(QSizePolicy.Fixed, QSizePolicy.Fixed)

        area = ZoomScrollArea(self._handle_zoom_wheel)
        area.setWidget(self.image_label)
        area.setWidgetResizable(False)
        area.setAlignment(Qt.AlignCenter)
        area.setHorizontalScrollBarPolicy(Qt.ScrollBarAsNeeded)
        area.setVerticalScrollBarPolicy(Qt.ScrollBarAsNeeded)
        return area

    def _build_controls(self) -> QWidget:
        panel = QWidget()
        panel.setObjectName("sidebar")
        layout = QVBoxLayout(panel)
        layout.setContentsMargins(16, 16, 16, 16)
        layout.setSpacing(10)

        logo = QLabel("[DITHER_GENERATOR]")
        logo.setObjectName("logo")
        logo.setAlignment(Qt.AlignCenter)
        layout.addWidget(logo)

        top_buttons = QHBoxLayout()
        self.import_button = QPushButton("Upload Image")
        self.export_button = QPushButton("Download")
        top_buttons.addWidget(self.import_button)
        top_buttons.addWidget(self.export_button)
        layout.addLayout(top_buttons)

        layout.addWidget(self._divider())

        layout.addWidget(self._section_title("[ALGORITHM]"))
        self.algorithm_combo = QComboBox()
        for name in ALGORITHMS:
            self.algorithm_combo.addItem(ALGORITHM_LABELS[name], name)
        layout.addWidget(self.algorithm_combo)

        layout.addWidget(self._section_title("[COLORS]"))
        colors = QGridLayout()
        colors.setHorizontalSpacing(8)
        self.dark_edit, self.dark_swatch = self._make_color_field("#000000")
        self.light_edit, self.light_swatch = self._make_color_field("#ffffff")
        colors.addWidget(QLabel("Dark"), 0, 0)
        colors.addWidget(self.dark_swatch, 0, 1)
        colors.addWidget(self.dark_edit, 0, 2)
        colors.addWidget(QLabel("Light"), 1, 0)
        colors.addWidget(self.light_swatch, 1, 1)
        colors.addWidget(self.light_edit, 1, 2)
        layout.addLayout(colors)

        layout.addWidget(self._section_title("[THRESHOLD]"))
        self.threshold_slider, self.threshold_value = self._make_slider(0, 255, 128, "", 1)
        self._add_slider(layout, self.threshold_slider, self.threshold_value)

        layout.addWidget(self._section_title("[STRENGTH]"))
        self.strength_slider, self.strength_value = self._make_slider(0, 100, 50, "%", 1)
        self._add_slider(layout, self.strength_slider, self.strength_value)

        layout.addWidget(self._section_title("[DOT_SIZE]"))
        self.scale_slider, self.scale_value = self._make_slider(5, 100, 100, "%", 5)
        self._add_slider(layout, self.scale_slider, self.scale_value)
        hint = QLabel("Lower values = larger dither dots")
        hint.setObjectName("hint")
        layout.addWidget(hint)

        layout.addWidget(self._divider())
        self.reset_all_button = QPushButton("Reset All")
        layout.addWidget(self.reset_all_button)
        layout.addStretch(1)

        self.import_button.clicked.connect(self.import_image)
        self.export_button.clicked.connect(self.export_image)
        self.reset_all_button.clicked.connect(self.reset_controls)
        self.algorithm_combo.currentIndexChanged.connect(self.schedule_update)
        for slider in [self.threshold_slider, self.strength_slider, self.scale_slider]:
            slider.valueChanged.connect(self.schedule_update)
        for edit, swatch in [(self.dark_edit, self.dark_swatch), (self.light_edit, self.light_swatch)]:
            edit.editingFinished.connect(lambda e=edit, s=swatch: self._on_color_edited(e, s))
            swatch.clicked.connect(lambda _=False, e=edit, s=swatch: self._pick_color(e, s))

        return panel

    def _section_title(self, text: str) -> QLabel:
        label = QLabel(text)
        label.setObjectName("sectionTitle")
        return label

    def _divider(self) -> QFrame:
        line = QFrame()
        line.setObjectName("divider")
        line.setFrameShape(QFrame.HLine)
        line.setFrameShadow(QFrame.Plain)
        return line

    def _make_slider(self, minimum: int, maximum: int, value: int, suffix: str, step: int):
        slider = QSlider(Qt.Horizontal)
        slider.setMinimum(minimum)
        slider.setMaximum(maximum)
        slider.setSingleStep(step)
        slider.setPageStep(max(step, (maximum - minimum) // 10))
        slider.setValue(value)
        value_label = QLabel()
        value_label.setMinimumWidth(44)
        value_label.setAlignment(Qt.AlignRight | Qt.AlignVCenter)
        self._update_value_label(value_label, value, suffix)
        slider.valueChanged.connect(lambda val: self._update_value_label(value_label, val, suffix))
        if step > 1:
            slider.valueChanged.connect(lambda val: self._snap_slider(slider, val, step))
        return slider, value_label

    def _snap_slider(self, slider: QSlider, value: int, step: int) -> None:
        snapped = slider.minimum() + round((value - slider.minimum()) / step) * step
        snapped = min(slider.maximum(), snapped)
        if snapped != value:
            slider.setValue(snapped)

    def _add_slider(self, layout: QVBoxLayout, slider: QSlider, label: QLabel) -> None:
        row = QHBoxLayout()
        row.addWidget(slider, 1)
        row.addWidget(label, 0)
        layout.addLayout(row)

    def _update_value_label(self, label: QLabel, value: int, suffix: str) -> None:
        label.setText(f"{value}{suffix}")

    def _make_color_field(self, value: str) -> tuple[QLineEdit, QPushButton]:
        edit = QLineEdit(value)
        edit.setPlaceholderText(value)
        edit.setMaxLength(7)
        swatch = QPushButton()
        swatch.setFixedSize(34, 28)
        self._paint_swatch(swatch, value)
        return edit, swatch

    def _paint_swatch(self, swatch: QPushButton, value: str) -> None:
        hex_value = format_color(parse_color(value))
        swatch.setStyleSheet(f"background-color: {hex_value}; border: 2px solid #111111;")
        swatch.setToolTip(hex_value)

    def _on_color_edited(self, edit: QLineEdit, swatch: QPushButton) -> None:
        self._paint_swatch(swatch, edit.text().strip())
        self.schedule_update()

    def _pick_color(self, edit: QLineEdit, swatch: QPushButton) -> None:
        current = QColor(format_color(parse_color(edit.text().strip())))
        color = QColorDialog.getColor(current, self, "Pick Color")
        if not color.isValid():
            return
        edit.setText(color.name())
        self._on_color_edited(edit, swatch)

    def current_config(self) -> DitherConfig:
        return DitherConfig.from_settings(
            {
                "algorithm": self.algorithm_combo.currentData() or DEFAULT_ALGORITHM,
                "threshold": self.threshold_slider.value(),
                "strength": self.strength_slider.value() / 100.0,
                "scale": self.scale_slider.value(),
                "dark_color": self.dark_edit.text().strip(),
                "light_color": self.light_edit.text().strip(),
            }
        )

    def _update_export_actions(self) -> None:
        has_image = self.original_image is not None
        self.export_image_action.setEnabled(has_image)
        self.export_button.setEnabled(has_image)

    def show_about(self) -> None:
        QMessageBox.information(
            self,
            "About",
            f"{APP_NAME}\nVersion {APP_VERSION}\n\n"
            "Floyd-Steinberg, Atkinson, Ordered (Bayer), Stucki, Burkes and Sierra dithering.",
        )

    def show_shortcuts(self) -> None:
        QMessageBox.information(
            self,
            "Shortcuts",
            "Import: Ctrl+O\nExport: Ctrl+S\nZoom: Mouse Wheel (over preview)\n"
            "Zoom In: Ctrl+=\nZoom Out: Ctrl+-\nReset Zoom: Ctrl+0",
        )

    def import_image(self) -> None:
        file_path, _ = QFileDialog.getOpenFileName(
            self,
            "Import Image",
            "",
            "Images (*.png *.jpg *.jpeg *.bmp *.gif *.tif *.tiff *.webp)",
        )
        if not file_path:
            return
        try:
            self.load_image(Path(file_path))
        except (OSError, UnidentifiedImageError) as exc:
            logger.error("Could not open %s: %s", file_path, exc)
            QMessageBox.critical(self, "Import Failed", f"Could not open image:\n{exc}")

    def load_image(self, path: Path) -> None:
        with Image.open(path) as source:
            image = ImageOps.exif_transpose(source)
            image.load()
        self.set_image(image)

    def set_image(self, image: Image.Image) -> None:
        self.original_image = image.convert("RGBA")
        self.preview_image = self._make_preview_source(self.original_image)
        self.dimensions_label.setText(f"{image.width} × {image.height} px")
        self._update_export_actions()
        self.schedule_update()

    def _make_preview_source(self, image: Image.Image) -> Image.Image:
        longest = max(image.width, image.height)
        if longest <= PREVIEW_MAX_SIDE:
            return image
        ratio = PREVIEW_MAX_SIDE / longest
        new_size = (max(1, int(image.width * ratio)), max(1, int(image.height * ratio)))
        logger.debug("Preview source reduced to %dx%d", *new_size)
        return image.resize(new_size, Image.Resampling.LANCZOS)

    def export_image(self) -> None:
        if self.original_image is None:
            QMessageBox.information(self, "Export", "No processed image to export yet.")
            return
        file_path, _ = QFileDialog.getSaveFileName(
            self,
            "Export Image",
            DEFAULT_EXPORT_NAME,
            "PNG (*.png);;JPEG (*.jpg *.jpeg);;BMP (*.bmp);;TIFF (*.tif *.tiff)",
        )
        if not file_path:
            return
        QApplication.setOverrideCursor(Qt.WaitCursor)
        try:
            full_res = dither_image(self.original_image, self.current_config(), resample=self.resample)
            full_res.save(file_path)
        except (OSError, ValueError) as exc:
            logger.error("Could not save %s: %s", file_path, exc)
            QMessageBox.critical(self, "Export Failed", f"Could not save image:\n{exc}")
        finally:
            QApplication.restoreOverrideCursor()

    def schedule_update(self) -> None:
        if self._update_scheduled:
            return
        self._update_scheduled = True
        QTimer.singleShot(0, self.update_preview)

    def update_preview(self) -> None:
        self._update_scheduled = False
        if self.preview_image is None:
            self.image_label.setText("No image loaded")
            self.image_label.setPixmap(QPixmap())
            self.image_label.adjustSize()
            return
        if self._render_running:
            # Started from _render_done with whatever the controls say by then.
            self._render_pending = True
            return
        self._start_render()

    def _start_render(self) -> None:
        generation = self._tracker.next()
        self._render_running = True
        args = (self._signals, self._closed, generation, self.preview_image, self.current_config(), self.resample)
        threading.Thread(target=run_render, args=args, daemon=True).start()

    def _render_done(self) -> None:
        self._render_running = False
        if self._render_pending:
            self._render_pending = False
            self.update_preview()

    def _finish_render(self, generation: int, image: Image.Image) -> None:
        if self._tracker.is_current(generation):
            self.processed_image = image
            self._render_pixmap(image)
        else:
            logger.debug("Dropping stale render %d", generation)
        self._render_done()

    def _fail_render(self, generation: int, message: str) -> None:
        current = self._tracker.is_current(generation)
        self._render_done()
        if current and not self._render_running:
            QMessageBox.critical(self, "Render Failed", message)

    def closeEvent(self, event) -> None:
        self._closed.set()
        super().closeEvent(event)

    def reset_controls(self) -> None:
        self.algorithm_combo.setCurrentIndex(ALGORITHMS.index(DEFAULT_ALGORITHM))
        defaults = DitherConfig()
        self.threshold_slider.setValue(defaults.threshold)
        self.strength_slider.setValue(int(round(defaults.strength * 100)))
        self.scale_slider.setValue(defaults.scale)
        self.dark_edit.setText(format_color(defaults.dark_color))
        self.light_edit.setText(format_color(defaults.light_color))
        self._paint_swatch(self.dark_swatch, self.dark_edit.text())
        self._paint_swatch(self.light_swatch, self.light_edit.text())
        self.reset_zoom()
        self.schedule_update()

    def zoom_in(self) -> None:
        self.zoom = min(4.0, self.zoom + 0.25)
        self._refresh_pixmap()

    def zoom_out(self) -> None:
        self.zoom = max(0.25, self.zoom - 0.25)
        self._refresh_pixmap()

    def reset_zoom(self) -> None:
        self.zoom = 1.0
        self._refresh_pixmap()

    def _handle_zoom_wheel(self, delta: int) -> None:
        if self.original_image is None:
            return
        if delta > 0:
            self.zoom_in()
        else:
            self.zoom_out()

    def _refresh_pixmap(self) -> None:
        if self.processed_image is not None:
            self._render_pixmap(self.processed_image)

    def _render_pixmap(self, image: Image.Image) -> None:
        qimage = pil_to_qimage(image)
        pixmap = QPixmap.fromImage(qimage)
        viewport = self.preview_area.viewport().size()
        if viewport.width() <= 0 or viewport.height() <= 0:
            viewport = QSize(800, 600)
        base_size = pixmap.size().scaled(viewport, Qt.KeepAspectRatio)
        scaled_size = QSize(
            max(1, int(base_size.width() * self.zoom)),
            max(1, int(base_size.height() * self.zoom)),
        )
        # Dots must stay crisp, so never smooth the preview.
        scaled = pixmap.scaled(scaled_size, Qt.KeepAspectRatio, Qt.FastTransformation)
        self.image_label.setPixmap(scaled)
        self.image_label.setFixedSize(scaled.size())
        self.image_label.setText("")

    def resizeEvent(self, event) -> None:
        super().resizeEvent(event)
        self._refresh_pixmap()


def main() -> int:
    configure_logging()
    app = QApplication(sys.argv)
    window = DitherWindow()
    if len(sys.argv) > 1:
        try:
            window.load_image(Path(sys.argv[1]))
        except (OSError, UnidentifiedImageError) as exc:
            logger.error("Could not open %s: %s", sys.argv[1], exc)
    window.show()
    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())
