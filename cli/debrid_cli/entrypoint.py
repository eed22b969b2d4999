from __future__ import annotations


def main() -> None:
    from .main import app

    app(prog_name="debrid-stack")


if __name__ == "__main__":
    main()
