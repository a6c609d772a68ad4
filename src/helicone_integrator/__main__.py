from helicone_integrator.cli import main


if __name__ == "__main__":
    main()
