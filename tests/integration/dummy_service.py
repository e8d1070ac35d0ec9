import os
import time


def main():
    print("Dummy service starting...")
    print(f"APP_ENV: {os.environ.get('APP_ENV')}")

    # Run until terminated
    while True:
        time.sleep(0.5)


if __name__ == "__main__":
    main()
