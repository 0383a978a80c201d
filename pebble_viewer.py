# coding: utf-8
"""
A PyQt application to browse a PebbleDB key-value store through its
read-only HTTP API: prefix/contains search, paging, and raw/hex/JSON
value views with copy support.
"""
import sys
import logging
import os
from typing import Any, Dict, List, Optional

from PyQt6.QtWidgets import (
    QApplication, QMainWindow, QWidget, QVBoxLayout, QHBoxLayout,
    QLabel, QLineEdit, QPushButton, QTextEdit, QSplitter, QStatusBar,
    QMessageBox, QFormLayout, QComboBox, QListWidget, QGroupBox, QStyle,
    QTabBar, QStackedWidget
)
from PyQt6.QtGui import QFont, QKeySequence, QShortcut, QPalette, QColor
from PyQt6.QtCore import Qt, QObject, QTimer, QUrl
from PyQt6.QtNetwork import QNetworkAccessManager, QNetworkRequest, QNetworkReply

from pebble_core import (
    CONFIG_FILE, DEFAULT_SERVER_URL, MODE_PREFIX, MODE_SUBSTRING, SUBSTRING_WARNING,
    VIEW_RAW, VIEW_HEX, VIEW_STRUCTURED, LOADING, LOADED,
    ListController, SelectionController, SessionState, StoreClient, StoreClientError,
    StatsRecord, SettingsError, ResponseCallback,
    default_settings, load_settings, save_settings, initial_server_url, upsert_profile, remove_profile,
    pagination_view, format_size, format_disk_size,
)

logger = logging.getLogger(__name__)

APP_TITLE = "Pebble Viewer v0.1.0"
REQUEST_TIMEOUT_MS = 10000

# combo index -> search mode, tab index -> display mode
SEARCH_MODE_ITEMS = [("Prefix", MODE_PREFIX), ("Contains", MODE_SUBSTRING)]
VIEW_TABS = [("Raw", VIEW_RAW), ("Hex", VIEW_HEX), ("JSON", VIEW_STRUCTURED)]

WARNING_STYLE = """
    QComboBox[warning="true"] { border: 1px solid #e0a800; background-color: rgba(224, 168, 0, 40); }
"""

# theme -> (group box border, field border); System keeps the native look
THEME_BORDERS = {"Dark": ("#3c3c3c", "#3c3c3c"), "Light": ("#e0e0e0", "#d0d0d0")}
THEME_STYLE = """
    QGroupBox {{ font-weight: 600; border: 1px solid {group}; border-radius: 6px; margin-top: 6px; }}
    QGroupBox::title {{ subcontrol-origin: margin; left: 10px; padding: 0 4px; }}
    QLineEdit, QComboBox, QTextEdit, QListWidget {{ border: 1px solid {field}; border-radius: 4px; padding: 4px; }}
    QPushButton {{ padding: 4px 10px; border: 1px solid {field}; border-radius: 4px; }}
    QPushButton:hover {{ border-color: #2a82da; }}
"""

DARK_PALETTE = {
    QPalette.ColorRole.Window: QColor(53, 53, 53),
    QPalette.ColorRole.WindowText: QColor(Qt.GlobalColor.white),
    QPalette.ColorRole.Base: QColor(35, 35, 35),
    QPalette.ColorRole.AlternateBase: QColor(53, 53, 53),
    QPalette.ColorRole.ToolTipBase: QColor(Qt.GlobalColor.white),
    QPalette.ColorRole.ToolTipText: QColor(Qt.GlobalColor.white),
    QPalette.ColorRole.Text: QColor(Qt.GlobalColor.white),
    QPalette.ColorRole.Button: QColor(53, 53, 53),
    QPalette.ColorRole.ButtonText: QColor(Qt.GlobalColor.white),
    QPalette.ColorRole.BrightText: QColor(Qt.GlobalColor.red),
    QPalette.ColorRole.Highlight: QColor(42, 130, 218),
    QPalette.ColorRole.HighlightedText: QColor(Qt.GlobalColor.black),
}


# ==============================================================================
#  Qt adapters: event-loop transport and timers
# ==============================================================================

class QtTransport(QObject):
    """Asynchronous GET over QNetworkAccessManager.

    Replies are delivered on the Qt event loop, one callback at a time.
    """

    def __init__(self, parent: Optional[QObject] = None, timeout_ms: int = REQUEST_TIMEOUT_MS):
        super().__init__(parent)
        self.manager = QNetworkAccessManager(self)
        self.timeout_ms = timeout_ms

    def get(self, url: str, callback: ResponseCallback):
        request = QNetworkRequest(QUrl.fromEncoded(url.encode("utf-8")))
        request.setRawHeader(b"Accept", b"application/json")
        request.setTransferTimeout(self.timeout_ms)
        reply = self.manager.get(request)
        reply.finished.connect(lambda: self._finished(reply, callback))

    @staticmethod
    def _finished(reply: QNetworkReply, callback: ResponseCallback):
        try:
            status = reply.attribute(QNetworkRequest.Attribute.HttpStatusCodeAttribute)
            if status is None:
                callback(None, b"", reply.errorString() or "no response")
            else:
                callback(int(status), bytes(reply.readAll()), None)
        finally:
            reply.deleteLater()


class QtScheduler(QObject):
    """call_later/cancel on single-shot QTimers."""

    def call_later(self, delay_ms: int, fn) -> QTimer:
        timer = QTimer(self)
        timer.setSingleShot(True)
        timer.timeout.connect(fn)
        timer.timeout.connect(timer.deleteLater)
        timer.start(delay_ms)
        return timer

    def cancel(self, timer: QTimer):
        timer.stop()
        timer.deleteLater()


# ==============================================================================
#  UI Presentation Layer: PyQt Application
# ==============================================================================

class PebbleViewer(QMainWindow):
    def __init__(self, argv: Optional[List[str]] = None):
        super().__init__()
        self.connections: List[Dict[str, Any]] = []
        self.session = SessionState()
        self.transport = QtTransport(self)
        self.scheduler = QtScheduler(self)
        self.client = StoreClient(self.transport, DEFAULT_SERVER_URL)
        self.list_ctrl = ListController(self.client, self.scheduler, self.session)
        self.selection = SelectionController(self.client)
        self.list_ctrl.on_keys.append(self.render_keys)
        self.list_ctrl.on_stats.append(self.render_stats)
        self.selection.on_change.append(self.render_selection)
        self.init_ui()
        self.load_settings(argv)

    def init_ui(self):
        self.setWindowTitle(APP_TITLE)
        self.setGeometry(100, 100, 1280, 720)
        self.setMinimumSize(900, 560)

        central_widget = QWidget()
        self.setCentralWidget(central_widget)
        main_layout = QVBoxLayout(central_widget)
        main_layout.setContentsMargins(8, 8, 8, 8)
        main_layout.setSpacing(8)

        # Connection group
        connection_group = QGroupBox("Server")
        connection_layout = QFormLayout(connection_group)
        connection_layout.setContentsMargins(10, 8, 10, 8)
        connection_layout.setSpacing(6)

        connection_management_layout = QHBoxLayout()
        self.connection_combo = QComboBox()
        self.connection_combo.setEditable(True)
        self.connection_combo.setPlaceholderText("Enter new profile name or select existing")
        self.save_connection_button = QPushButton("Save")
        self.delete_connection_button = QPushButton("Delete")
        self.test_connection_button = QPushButton("Test")
        self.save_connection_button.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_DialogSaveButton))
        self.delete_connection_button.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_TrashIcon))
        self.test_connection_button.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_DialogApplyButton))
        connection_management_layout.addWidget(QLabel("Profile:"))
        connection_management_layout.addWidget(self.connection_combo, 1)
        connection_management_layout.addWidget(self.save_connection_button)
        connection_management_layout.addWidget(self.delete_connection_button)
        connection_management_layout.addWidget(self.test_connection_button)
        connection_management_layout.addStretch(1)
        self.theme_combo = QComboBox(); self.theme_combo.addItems(["System", "Light", "Dark"])
        connection_management_layout.addWidget(QLabel("Theme:"))
        connection_management_layout.addWidget(self.theme_combo)
        connection_layout.addRow(connection_management_layout)

        url_layout = QHBoxLayout()
        self.url_input = QLineEdit(); self.url_input.setPlaceholderText(DEFAULT_SERVER_URL)
        self.connect_button = QPushButton("Connect")
        url_layout.addWidget(self.url_input, 1)
        url_layout.addWidget(self.connect_button)
        connection_layout.addRow("URL:", url_layout)

        self.connection_combo.activated.connect(self.load_selected_connection)
        self.save_connection_button.clicked.connect(self.save_connection)
        self.delete_connection_button.clicked.connect(self.delete_connection)
        self.test_connection_button.clicked.connect(self.test_connection)
        self.connect_button.clicked.connect(self.connect_to_server)
        self.url_input.returnPressed.connect(self.connect_to_server)

        main_layout.addWidget(connection_group)

        main_splitter = QSplitter(Qt.Orientation.Horizontal)

        # --- Keys pane ---
        keys_box = QGroupBox("Keys")
        keys_layout = QVBoxLayout(keys_box)
        keys_layout.setContentsMargins(10, 8, 10, 8)
        keys_layout.setSpacing(6)
        self.db_path_label = QLabel("DB: -")
        self.key_count_label = QLabel("Keys: -")
        self.db_size_label = QLabel("")
        stats_layout = QHBoxLayout()
        for w in [self.db_path_label, self.key_count_label, self.db_size_label]:
            stats_layout.addWidget(w)
        stats_layout.addStretch()
        keys_layout.addLayout(stats_layout)

        search_layout = QHBoxLayout()
        self.search_input = QLineEdit(); self.search_input.setPlaceholderText("Search keys...")
        self.search_input.setClearButtonEnabled(True)
        self.search_mode_combo = QComboBox()
        for label, mode in SEARCH_MODE_ITEMS:
            self.search_mode_combo.addItem(label, mode)
        self.refresh_button = QPushButton("Refresh")
        self.refresh_button.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_BrowserReload))
        search_layout.addWidget(self.search_input, 1)
        search_layout.addWidget(self.search_mode_combo)
        search_layout.addWidget(self.refresh_button)
        keys_layout.addLayout(search_layout)

        self.keys_list = QListWidget()
        self.keys_list.setAlternatingRowColors(True)
        self.keys_list.setFont(QFont("Consolas", 10))
        keys_layout.addWidget(self.keys_list)

        pagination_layout = QHBoxLayout()
        self.prev_button = QPushButton("◀ Prev")
        self.next_button = QPushButton("Next ▶")
        self.page_label = QLabel("Page 1 of 1")
        self.prev_button.setEnabled(False); self.next_button.setEnabled(False)
        pagination_layout.addWidget(self.prev_button)
        pagination_layout.addStretch()
        pagination_layout.addWidget(self.page_label)
        pagination_layout.addStretch()
        pagination_layout.addWidget(self.next_button)
        keys_layout.addLayout(pagination_layout)

        self.search_input.textChanged.connect(self.list_ctrl.search_text_changed)
        self.search_mode_combo.currentIndexChanged.connect(self.change_search_mode)
        self.refresh_button.clicked.connect(self.refresh)
        self.prev_button.clicked.connect(self.list_ctrl.prev_page)
        self.next_button.clicked.connect(self.list_ctrl.next_page)
        self.keys_list.itemClicked.connect(lambda item: self.selection.select(item.text()))

        # --- Value pane ---
        value_box = QGroupBox("Value")
        value_layout = QVBoxLayout(value_box)
        value_layout.setContentsMargins(10, 8, 10, 8)
        self.value_stack = QStackedWidget()
        self.no_selection_label = QLabel("Select a key to view its value")
        self.no_selection_label.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self.value_stack.addWidget(self.no_selection_label)

        viewer = QWidget()
        viewer_layout = QVBoxLayout(viewer)
        viewer_layout.setContentsMargins(0, 0, 0, 0)
        header_layout = QHBoxLayout()
        self.current_key_label = QLabel()
        self.current_key_label.setFont(QFont("Consolas", 10, QFont.Weight.Bold))
        self.current_key_label.setTextInteractionFlags(Qt.TextInteractionFlag.TextSelectableByMouse)
        self.value_size_label = QLabel()
        header_layout.addWidget(self.current_key_label, 1)
        header_layout.addWidget(self.value_size_label)
        viewer_layout.addLayout(header_layout)

        tabs_layout = QHBoxLayout()
        self.view_tabs = QTabBar()
        for label, _mode in VIEW_TABS:
            self.view_tabs.addTab(label)
        self.copy_button = QPushButton("Copy")
        self.copy_button.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_DialogSaveButton))
        self.copy_button.setToolTip("Copy current view (Ctrl+Shift+C)")
        tabs_layout.addWidget(self.view_tabs)
        tabs_layout.addStretch()
        tabs_layout.addWidget(self.copy_button)
        viewer_layout.addLayout(tabs_layout)

        self.value_text = QTextEdit(); self.value_text.setFont(QFont("Consolas", 10)); self.value_text.setReadOnly(True)
        viewer_layout.addWidget(self.value_text)
        self.value_stack.addWidget(viewer)
        value_layout.addWidget(self.value_stack)

        self.view_tabs.currentChanged.connect(lambda i: self.selection.set_display_mode(VIEW_TABS[i][1]))
        self.copy_button.clicked.connect(self.copy_value)

        main_splitter.addWidget(keys_box)
        main_splitter.addWidget(value_box)
        main_splitter.setSizes([420, 860])
        main_splitter.setChildrenCollapsible(False)
        main_layout.addWidget(main_splitter, 1)

        self.status_bar = QStatusBar(); self.setStatusBar(self.status_bar)
        self.theme_combo.currentTextChanged.connect(self.change_theme)

        self.refresh_button.setToolTip("Refresh (F5)")
        self.prev_button.setToolTip("Previous page (Alt+Left)")
        self.next_button.setToolTip("Next page (Alt+Right)")
        QShortcut(QKeySequence("F5"), self, activated=self.refresh)
        QShortcut(QKeySequence("Ctrl+F"), self, activated=self.search_input.setFocus)
        QShortcut(QKeySequence("Alt+Left"), self, activated=self.list_ctrl.prev_page)
        QShortcut(QKeySequence("Alt+Right"), self, activated=self.list_ctrl.next_page)
        QShortcut(QKeySequence("Ctrl+Shift+C"), self, activated=self.copy_value)

    # --- Rendering ---
    def render_keys(self, ctrl: ListController):
        self.keys_list.clear()
        self.keys_list.addItems(list(ctrl.keys))
        if self.selection.key is not None:
            for item in self.keys_list.findItems(self.selection.key, Qt.MatchFlag.MatchExactly):
                item.setSelected(True)
        self.render_pagination()

    def render_pagination(self):
        info = pagination_view(self.list_ctrl.state)
        self.page_label.setText(info.label)
        self.prev_button.setEnabled(info.prev_enabled)
        self.next_button.setEnabled(info.next_enabled)

    def render_stats(self, ctrl: ListController):
        stats: StatsRecord = ctrl.stats
        self.db_path_label.setText(f"DB: {stats.db_path}")
        self.db_path_label.setToolTip(stats.db_path)
        self.key_count_label.setText(f"Keys: {stats.total_keys}")
        self.db_size_label.setText(f"Size: {format_disk_size(stats.db_size_bytes)}" if stats.db_size_bytes else "")

    def render_selection(self, sel: SelectionController):
        if sel.status == LOADED:
            self.current_key_label.setText(sel.record.key)
            self.value_size_label.setText(format_size(sel.record.size_bytes))
            self.value_text.setPlainText(sel.rendering())
            self.value_stack.setCurrentIndex(1)
        elif sel.status == LOADING:
            self.current_key_label.setText(sel.key)
            self.value_size_label.setText("")
            self.value_text.setPlainText("Loading...")
            self.value_stack.setCurrentIndex(1)
        else:
            self.keys_list.clearSelection()
            self.value_text.clear()
            self.value_stack.setCurrentIndex(0)

    # --- Actions ---
    def refresh(self):
        self.list_ctrl.refresh()
        self.status_bar.showMessage("Refreshing...", 2000)

    def change_search_mode(self, index: int):
        mode = self.search_mode_combo.itemData(index)
        self.search_mode_combo.setProperty("warning", mode == MODE_SUBSTRING)
        self.search_mode_combo.style().unpolish(self.search_mode_combo)
        self.search_mode_combo.style().polish(self.search_mode_combo)
        if self.list_ctrl.search_mode_changed(mode):
            QMessageBox.warning(self, "Contains Search", SUBSTRING_WARNING)

    def copy_value(self):
        text = self.selection.rendering()
        if text:
            QApplication.clipboard().setText(text)
            self.status_bar.showMessage("Value copied.", 2000)

    def connect_to_server(self):
        url = self.url_input.text().strip()
        if not url:
            QMessageBox.warning(self, "Input Error", "Server URL cannot be empty.")
            return
        self.client.base_url = url.rstrip("/")
        self.setWindowTitle(f"{APP_TITLE} - {self.client.base_url}")
        self.selection.clear()
        self.list_ctrl.restart()
        self.status_bar.showMessage(f"Browsing {self.client.base_url}", 3000)

    def test_connection(self):
        url = self.url_input.text().strip()
        if not url:
            QMessageBox.warning(self, "Input Error", "Server URL cannot be empty.")
            return
        probe = StoreClient(self.transport, url)
        self.status_bar.showMessage(f"Testing {probe.base_url}...")

        def _ok(stats: StatsRecord):
            self.status_bar.showMessage(f"Connection OK: {stats.db_path} ({stats.total_keys} keys).", 4000)

        def _failed(err: StoreClientError):
            logger.warning("Connection test against %s failed: %s", probe.base_url, err)
            self.status_bar.clearMessage()
            QMessageBox.critical(self, "Connection Error", str(err))

        probe.fetch_stats(_ok, _failed)

    # --- Connection profiles ---
    def load_selected_connection(self, index):
        if index < 0 or index >= len(self.connections):
            return
        connection_data = self.connections[index]
        self.url_input.setText(connection_data.get("url", DEFAULT_SERVER_URL))
        self.status_bar.showMessage(f"Loaded profile '{connection_data['name']}'", 3000)
        self.connect_to_server()

    def save_connection(self):
        name = self.connection_combo.currentText().strip()
        if not name:
            QMessageBox.warning(self, "Save Error", "Profile name cannot be empty.")
            return
        self.connections, created = upsert_profile(self.connections, name, self.url_input.text().strip())
        if created:
            self.connection_combo.addItem(name)
            self.connection_combo.setCurrentText(name)
        self.status_bar.showMessage(f"Profile '{name}' {'saved' if created else 'updated'}.", 3000)
        self.save_settings()

    def delete_connection(self):
        name = self.connection_combo.currentText()
        if not name:
            QMessageBox.warning(self, "Delete Error", "No profile selected to delete.")
            return
        answer = QMessageBox.question(self, "Delete Profile", f"Delete the server profile '{name}'?",
                                      QMessageBox.StandardButton.Yes | QMessageBox.StandardButton.No)
        if answer != QMessageBox.StandardButton.Yes:
            return
        self.connections = remove_profile(self.connections, name)
        self.connection_combo.clear()
        self.connection_combo.addItems([p["name"] for p in self.connections])
        if self.connections:
            self.connection_combo.setCurrentIndex(0)
            self.load_selected_connection(0)
        self.status_bar.showMessage(f"Profile '{name}' deleted.", 3000)
        self.save_settings()

    # --- Settings ---
    def save_settings(self):
        settings = {
            "connections": self.connections,
            "current_connection_name": self.connection_combo.currentText(),
            "theme": self.theme_combo.currentText(),
        }
        try:
            save_settings(settings, CONFIG_FILE)
        except SettingsError as e:
            logger.error("%s", e)
            self.status_bar.showMessage(str(e), 5000)

    def load_settings(self, argv: Optional[List[str]] = None):
        first_run = not CONFIG_FILE.exists()
        try:
            settings = load_settings(CONFIG_FILE)
        except SettingsError as e:
            logger.error("%s", e)
            QMessageBox.critical(self, "Load Settings Error", str(e))
            settings = default_settings()
        self.connections = settings["connections"]
        self.connection_combo.clear(); self.connection_combo.addItems([c['name'] for c in self.connections])
        current = settings.get("current_connection_name")
        if current and any(c['name'] == current for c in self.connections):
            self.connection_combo.setCurrentText(current)
        self.theme_combo.blockSignals(True)
        self.theme_combo.setCurrentText(settings["theme"])
        self.theme_combo.blockSignals(False)
        self.url_input.setText(initial_server_url(settings, argv))
        if first_run:
            self.save_settings()

    def start(self):
        self.apply_theme(self.theme_combo.currentText())
        self.client.base_url = (self.url_input.text().strip() or DEFAULT_SERVER_URL).rstrip("/")
        self.setWindowTitle(f"{APP_TITLE} - {self.client.base_url}")
        self.list_ctrl.start()

    # Theming helpers
    def change_theme(self, theme: str):
        self.apply_theme(theme)
        self.save_settings()

    def apply_theme(self, theme: str):
        app = QApplication.instance()
        app.setStyle("Fusion")
        if theme == "Dark":
            palette = QPalette()
            for role, color in DARK_PALETTE.items():
                palette.setColor(role, color)
            app.setPalette(palette)
        else:
            app.setPalette(app.style().standardPalette())
        border = THEME_BORDERS.get(theme)
        sheet = THEME_STYLE.format(group=border[0], field=border[1]) if border else ""
        app.setStyleSheet(sheet + WARNING_STYLE)


def main():
    logging.basicConfig(
        level=os.environ.get("PEBBLE_VIEWER_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = QApplication(sys.argv)
    app.setFont(QFont("Segoe UI", 10))
    viewer = PebbleViewer(app.arguments())
    viewer.show()
    viewer.start()
    sys.exit(app.exec())


if __name__ == '__main__':
    main()
