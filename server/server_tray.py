"""
BioSync - Cross-Platform System Tray Application
Runs the BioSync server as a background service with sync controls in the
system tray. Falls back to console mode when no tray is available.
"""

import os
import platform
import sys
import threading

from PyQt6.QtCore import QObject, QThread, QTimer, Qt, pyqtSignal
from PyQt6.QtGui import QAction, QBrush, QColor, QIcon, QPainter, QPixmap
from PyQt6.QtWidgets import QApplication, QMenu, QMessageBox, QSystemTrayIcon

import shared
from shared.backup_utils import create_backup
from shared.logging_config import get_logger
from shared.utils import get_resource_path

logger = get_logger("TRAY")

STATUS_POLL_MS: int = 5000
STARTUP_DELAY_MS: int = 1000


def is_system_tray_available():
    """Check if system tray is available on current platform"""
    if not QSystemTrayIcon.isSystemTrayAvailable():
        return False

    if platform.system() == "Linux":
        desktop = os.environ.get('XDG_CURRENT_DESKTOP', '').lower()
        if desktop in ['gnome', 'kde', 'xfce', 'mate', 'cinnamon']:
            return True
        return bool(os.environ.get('DISPLAY') or os.environ.get('WAYLAND_DISPLAY'))

    return platform.system() in ("Darwin", "Windows")


def create_app_icon() -> QIcon:
    """Create QIcon from bundled icon file, with a drawn fallback"""
    icon_path = get_resource_path('ico.ico')
    if icon_path.exists():
        return QIcon(str(icon_path))

    logger.debug(f"Icon file not found at {icon_path}, using fallback")
    pixmap = QPixmap(32, 32)
    pixmap.fill(Qt.GlobalColor.transparent)

    painter = QPainter(pixmap)
    painter.setBrush(QBrush(QColor(0, 150, 110)))
    painter.setPen(Qt.PenStyle.NoPen)
    painter.drawEllipse(4, 4, 24, 24)
    painter.end()

    return QIcon(pixmap)


class ServerManager(QThread):
    """Runs the Waitress server inside a QThread."""

    server_stopped = pyqtSignal()
    server_error = pyqtSignal(str)

    def __init__(self, app, host, port):
        super().__init__()
        self._app = app
        self._host = host
        self._port = port

    def stop_server(self):
        """Ask the server to shut down through its local admin endpoint"""
        if not self.isRunning():
            return

        import requests
        try:
            requests.post(f'http://{self._host}:{self._port}/admin/shutdown', timeout=3)
        except requests.exceptions.ConnectionError:
            logger.debug("Connection refused during shutdown (server may already be stopping)")
        except requests.exceptions.RequestException as e:
            logger.warning(f"Shutdown request failed: {e}")

        self.wait(3000)

    def run(self):
        from server.server import run_server

        try:
            run_server(self._app, host=self._host, port=self._port)
        except Exception as e:
            logger.error(f"Server error: {e}")
            self.server_error.emit(str(e))
        finally:
            self.server_stopped.emit()


class BioSyncTray(QObject):
    """System tray application for BioSync"""

    # SyncResults arrive on worker threads; this signal moves them to the GUI thread
    result_received = pyqtSignal(dict)

    def __init__(self, app: QApplication):
        super().__init__()
        from server import create_runtime, server_address

        self.app = app
        self.host, self.port = server_address()
        self.flask_app, self.sync_service = create_runtime(resume=False)
        self.sync_service.add_result_listener(lambda result: self.result_received.emit(result.to_dict()))
        self.result_received.connect(self.on_sync_result)

        self.tray_icon = QSystemTrayIcon()
        self.tray_icon.setIcon(create_app_icon())
        self.create_context_menu()

        self.server_manager = ServerManager(self.flask_app, self.host, self.port)
        self.server_manager.server_error.connect(self.on_server_error)
        self.server_manager.start()

        self.status_timer = QTimer(self)
        self.status_timer.timeout.connect(self.refresh_status)
        self.status_timer.start(STATUS_POLL_MS)

        self.tray_icon.show()
        self.refresh_status()

        # Resume a sync left running at last exit once the tray is visible
        QTimer.singleShot(STARTUP_DELAY_MS, lambda: self._in_background(self.sync_service.initialize_from_store))

    def create_context_menu(self):
        menu = QMenu()

        self.status_action = QAction(f"BioSync v{shared.__VERSION__}", self)
        self.status_action.setEnabled(False)
        menu.addAction(self.status_action)
        menu.addSeparator()

        self.start_action = QAction("Start Sync", self)
        self.start_action.triggered.connect(self.start_sync)
        menu.addAction(self.start_action)

        self.stop_action = QAction("Stop Sync", self)
        self.stop_action.triggered.connect(self.stop_sync)
        menu.addAction(self.stop_action)

        self.run_now_action = QAction("Sync Now", self)
        self.run_now_action.triggered.connect(self.run_now)
        menu.addAction(self.run_now_action)

        menu.addSeparator()

        self.backup_action = QAction("Backup Settings", self)
        self.backup_action.triggered.connect(self.backup_store)
        menu.addAction(self.backup_action)

        menu.addSeparator()

        self.quit_action = QAction("Exit", self)
        self.quit_action.triggered.connect(self.quit_application)
        menu.addAction(self.quit_action)

        self.tray_icon.setContextMenu(menu)

    def _in_background(self, func, *args):
        """Network calls never run on the GUI thread"""
        def runner():
            try:
                func(*args)
            except Exception as e:
                logger.error(f"Background task failed: {e}")

        threading.Thread(target=runner, daemon=True).start()

    def start_sync(self):
        store = self.sync_service.store
        config = store.get_config()
        auth = store.get_auth_info()
        if not (auth.has_credentials() and config.server_url):
            QMessageBox.warning(None, "BioSync", "Save the server URL and credentials before starting sync.")
            return

        self._in_background(self.sync_service.start_sync, config.sync_period,
                            {'username': auth.username, 'password': auth.password})

    def stop_sync(self):
        self._in_background(self.sync_service.stop_sync)

    def run_now(self):
        self._in_background(self.sync_service.run_once)

    def backup_store(self):
        try:
            backup_path = create_backup(self.sync_service.store.path)
            QMessageBox.information(None, 'Backup', f'Settings backed up as {backup_path}')
        except (FileNotFoundError, TypeError):
            QMessageBox.warning(None, 'Backup Failed', 'Settings file not found.')
        except IOError as e:
            QMessageBox.warning(None, 'Backup Failed', f'Could not backup settings: {e}')

    def refresh_status(self):
        running = self.sync_service.is_running()
        last_sync = self.sync_service.store.get_config().last_sync_time or 'never'
        state = "Syncing" if running else "Stopped"

        self.status_action.setText(f"Status: {state} (last sync {last_sync})")
        self.start_action.setEnabled(not running)
        self.stop_action.setEnabled(running)
        self.tray_icon.setToolTip(f"BioSync v{shared.__VERSION__} - {state} on {self.host}:{self.port}")

    def on_sync_result(self, result: dict):
        if not result.get('success') and QSystemTrayIcon.supportsMessages():
            self.tray_icon.showMessage(
                f"BioSync - {result.get('api')}",
                result.get('error') or 'Sync step failed',
                QSystemTrayIcon.MessageIcon.Warning,
                5000
            )
        self.refresh_status()

    def on_server_error(self, error):
        self.tray_icon.setToolTip(f"BioSync v{shared.__VERSION__} - Server error: {error}")
        QMessageBox.critical(None, "Server Error", f"Server error: {error}")

    def quit_application(self):
        self.status_timer.stop()
        self.sync_service.shutdown()
        self.server_manager.stop_server()
        self.app.quit()


def main():
    """Main entry point - tries system tray first, falls back to console"""
    from server import run_console_server

    try:
        app = QApplication(sys.argv)
    except Exception as e:
        logger.error(f"Could not initialize GUI: {e}")
        run_console_server()
        return

    if not is_system_tray_available():
        logger.warning("System tray not available, falling back to console mode...")
        app.quit()
        run_console_server()
        return

    logger.info(f"Starting BioSync v{shared.__VERSION__} on {platform.system()}")
    app.setQuitOnLastWindowClosed(False)

    tray_app = BioSyncTray(app)  # noqa: F841 (kept alive for the event loop)

    logger.info("BioSync running in system tray. Right-click tray icon for options.")
    sys.exit(app.exec())


if __name__ == '__main__':
    main()
