from rich.console import Console

from display import ConsoleDisplay


def make_display():
    console = Console(record=True, width=60, color_system=None)
    return ConsoleDisplay(console=console), console


def test_renders_text_in_panel():
    display, console = make_display()
    display.show_text_wall("Listening...\n\nwhat time", duration_ms=10000)
    output = console.export_text()
    assert "Listening..." in output
    assert "what time" in output
    assert "Mira" in output


def test_repeated_notices_are_each_shown():
    display, console = make_display()
    display.show_text_wall('Timer for "tea" is up!')
    display.show_text_wall('Timer for "tea" is up!')
    assert console.export_text().count('Timer for "tea" is up!') == 2


def test_closed_display_drops_updates():
    display, console = make_display()
    display.close()
    display.show_text_wall("too late")
    assert "too late" not in console.export_text()
