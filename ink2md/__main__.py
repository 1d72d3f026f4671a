from ink2md.cli import main


if __name__ == "__main__":
    main()
