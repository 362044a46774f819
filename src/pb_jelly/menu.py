import sys
import asyncio
import argparse
import logging
from typing import List, Optional, Tuple

from prompt_toolkit.application import Application, get_app
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout import HSplit, Layout
from prompt_toolkit.layout.containers import WindowAlign
from prompt_toolkit.shortcuts import message_dialog
from prompt_toolkit.widgets import Button, Dialog, Frame, Label, TextArea

from . import logs
from .cli import format_binary_status, format_status, setup_logging
from .config import Config, Environment, load_config
from .errors import PocketBaseToolError
from .process_tracker import ProcessTracker
from .server import start_server

logger = logging.getLogger(__name__)


LOG_VIEW_LINES = 500
LOG_REFRESH_SECONDS = 1.0


def _log_text(log_path: str) -> str:
    return logs.tail(log_path, LOG_VIEW_LINES) or "[Log is empty or does not exist]"


class LogViewer:
    """Full-screen view of the last lines of a log file.

    q or Esc closes, r reloads. The view also reloads on a timer and
    stays pinned to the bottom unless the user scrolled up.
    """

    def __init__(self, log_path: str, title: str):
        self.log_path = log_path
        self.view = TextArea(text=_log_text(log_path), scrollbar=True, read_only=True)
        self.view.buffer.cursor_position = len(self.view.text)

        kb = KeyBindings()
        kb.add("q")(self._close)
        kb.add("escape")(self._close)
        kb.add("r")(lambda event: self.reload())

        footer = Label(text=f"{log_path}  [r] reload  [q/Esc] close", dont_extend_height=True)
        self.app = Application(
            layout=Layout(HSplit([Frame(self.view, title=title), footer])),
            key_bindings=kb,
            mouse_support=True,
            full_screen=True,
        )
        self.app.pre_run_callables.append(lambda: self.app.create_background_task(self._follow()))

    @staticmethod
    def _close(event):
        event.app.exit()

    def reload(self) -> bool:
        text = _log_text(self.log_path)
        if text == self.view.text:
            return False
        at_end = self.view.buffer.cursor_position == len(self.view.text)
        self.view.text = text
        if at_end:
            self.view.buffer.cursor_position = len(text)
        return True

    async def _follow(self):
        while True:
            await asyncio.sleep(LOG_REFRESH_SECONDS)
            if self.reload():
                self.app.invalidate()

    def run(self) -> None:
        self.app.run()


def show_log(log_path: str, title: str, clear: bool = False) -> None:
    if clear:
        logs.clear_log(log_path)
        message_dialog(title="Log Cleared", text=f"{title} has been cleared.").run()
        return
    LogViewer(log_path, title).run()


class MenuApp:
    """Full-screen menu for starting, stopping and inspecting environments."""

    def __init__(self, cfg: Config, tracker: Optional[ProcessTracker] = None):
        self.cfg = cfg
        self.tracker = tracker or ProcessTracker(cfg)
        self.active_index = 0

    def get_menu_items(self) -> List[Tuple[str, str]]:
        items = []
        for env in Environment:
            label = self.cfg.settings(env).label
            if self.tracker.status(env).is_running:
                items.append((f'stop:{env}', f'Stop {label} Server'))
            else:
                items.append((f'start:{env}', f'Start {label} Server'))
            items.append((f'logs:{env}', f'View {label} Log'))
            items.append((f'clear:{env}', f'Clear {label} Log'))
        items += [
            ('status', 'Status'),
            ('exit', 'Exit'),
        ]
        return items

    def build_buttons(self, menu_items: List[Tuple[str, str]], selected: dict) -> List[Button]:
        buttons = []
        for value, label in menu_items:
            def make_handler(v):
                def handler():
                    selected['value'] = v
                    get_app().exit()
                return handler
            btn = Button(text=label, handler=make_handler(value))
            btn.window.align = WindowAlign.LEFT
            buttons.append(btn)
        return buttons

    def run(self) -> None:
        while True:
            menu_items = self.get_menu_items()
            selected = {'value': None}
            buttons = self.build_buttons(menu_items, selected)
            btn_container = HSplit(buttons, padding=0)
            dialog = Dialog(
                title='PocketBase Environments',
                body=HSplit([
                    Label(text="Use Arrow/Tab/Shift-Tab/Up/Down to select, Enter to activate."),
                    btn_container,
                ], padding=1),
                with_background=True,
            )
            kb = KeyBindings()

            def move(event, step):
                btns = btn_container.children
                try:
                    i = btns.index(event.app.layout.current_window)
                except ValueError:
                    i = 0
                self.active_index = (i + step) % len(btns)
                event.app.layout.focus(btns[self.active_index])

            kb.add('down')(lambda event: move(event, 1))
            kb.add('up')(lambda event: move(event, -1))

            self.active_index = min(self.active_index, len(buttons) - 1)
            app = Application(
                layout=Layout(dialog, focused_element=buttons[self.active_index].window),
                key_bindings=kb,
                full_screen=True,
                mouse_support=True,
            )
            app.run()
            if not self.handle_selection(selected['value']):
                break

    def status_text(self) -> str:
        lines = []
        for status in self.tracker.status_all():
            lines.extend(format_status(self.cfg, status))
        lines.append("")
        lines.extend(format_binary_status(self.cfg))
        return "\n".join(lines)

    def handle_selection(self, value: Optional[str]) -> bool:
        if value in ('exit', None):
            print("Exiting...")
            return False
        if value == 'status':
            message_dialog(title="Status", text=self.status_text()).run()
            return True
        action, _, env_name = value.partition(':')
        env = Environment.parse(env_name)
        try:
            if action == 'start':
                start_server(self.cfg, env, self.tracker, background=True)
            elif action == 'stop':
                self.tracker.stop(env)
            elif action == 'logs':
                show_log(self.cfg.log_file(env), f"{self.cfg.settings(env).label} Log")
            elif action == 'clear':
                show_log(self.cfg.log_file(env), f"{self.cfg.settings(env).label} Log", clear=True)
        except PocketBaseToolError as e:
            logger.error("%s", e)
            message_dialog(title="Error", text=str(e)).run()
        return True


def main():
    parser = argparse.ArgumentParser(
        prog="pb-jelly-menu",
        description="Interactive terminal (TUI) menu for PocketBase environments.",
    )
    parser.add_argument('--project-dir', type=str, default=None)
    args = parser.parse_args()

    if not sys.stdin.isatty():
        print("\nNo interactive terminal detected.")
        parser.print_usage()
        print("\nFor non-interactive usage, run 'pb-jelly --help'.")
        sys.exit(1)

    try:
        cfg = load_config(project_dir=args.project_dir)
        setup_logging(cfg, quiet=True)
        MenuApp(cfg).run()
    except KeyboardInterrupt:
        print("\nInterrupted.")
    except PocketBaseToolError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
