from arr_conversion.cli import main

if __name__ == "__main__":
    main()
