import os
import time


def main():
    print("Dummy service starting...", flush=True)
    print(f"USER: {os.environ.get('USER')}", flush=True)
    print(f"PORT: {os.environ.get('PORT')}", flush=True)
    print(f"BIND: {os.environ.get('STRATA_BIND_ADDRESS')}", flush=True)

    for i in range(30):
        time.sleep(1)

    print("Dummy service finishing.", flush=True)


if __name__ == "__main__":
    main()
