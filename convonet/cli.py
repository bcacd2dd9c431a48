"""Command line entry point for ConvoNet training and testing."""

import argparse
import sys
from pathlib import Path

from .config import load_config
from .errors import ConvoNetError
from .network import RunStatus, run_testing, run_training
from .optimizers import get_rate_schedule
from .snapshot import load_fit_params, save_fit_params
from .utils import load_image_folder, load_mnist


def _training_samples(config, data):
    general = config.general_config
    if data == 'mnist':
        subset = (general.total_training_samples or None, general.total_testing_samples or None)
        train, _ = load_mnist(general.training_dir or 'mnist_dataset', subset_size=subset)
        return train
    return load_image_folder(general.training_dir, config.num_classes)


def _testing_samples(config, data):
    general = config.general_config
    if data == 'mnist':
        subset = (general.total_training_samples or None, general.total_testing_samples or None)
        _, test = load_mnist(general.testing_dir or general.training_dir or 'mnist_dataset',
                             subset_size=subset)
        return test
    return load_image_folder(general.testing_dir, config.num_classes)


def _print_result(result):
    print(f"status: {result.status.value}")
    if result.message:
        print(f"message: {result.message}")
    if result.operation:
        print(f"operation: {result.operation}")
    if result.net_result is not None:
        net_result = result.net_result
        print(f"samples: {net_result.samples_completed}  correct: {net_result.samples_correct}  "
              f"accuracy: {net_result.accuracy:.4f}")


def cmd_train(args):
    config = load_config(args.config)
    samples = _training_samples(config, args.data)

    fit_params = load_fit_params(args.params) if args.params else None
    result = run_training(config, samples, fit_params=fit_params, verbose=True,
                          epochs=args.epochs)
    _print_result(result)

    if args.save and result.fit_params is not None:
        save_fit_params(result.fit_params, args.save)
        print(f"Parameters saved to {args.save}")

    if args.plot and result.net_result is not None:
        from .visualizations import plot_training_history, visualize_confusion_matrix
        plot_training_history(result.net_result.history)
        visualize_confusion_matrix(result.net_result.summary_results)

    return 0 if result.status in (RunStatus.OK, RunStatus.CANCELLED) else 1


def cmd_test(args):
    config = load_config(args.config)
    samples = _testing_samples(config, args.data)
    result = run_testing(config, load_fit_params(args.params), samples, verbose=True)
    _print_result(result)

    if result.ok:
        print("Confusion matrix (rows = actual, columns = predicted):")
        print(result.net_result.confusion_matrix())
        if args.plot:
            from .visualizations import visualize_confusion_matrix
            visualize_confusion_matrix(result.net_result.summary_results)

    return 0 if result.ok else 1


def cmd_schedule(args):
    config = load_config(args.config)
    rate_model = config.back_prop_config.rate_model
    schedule = get_rate_schedule(rate_model)

    total = args.samples or config.general_config.total_training_samples or 10 * rate_model.step_count
    step = max(total // args.points, 1)
    for count in range(0, total + 1, step):
        print(f"{count:>10d}  {schedule(count):.6f}")

    if args.plot:
        from .visualizations import plot_rate_schedule
        plot_rate_schedule(schedule, total, batch_size=step, title=rate_model.rate_fn)
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='convonet', description=__doc__)
    subparsers = parser.add_subparsers(dest='command', required=True)

    train = subparsers.add_parser('train', help='Train a network from a JSON config')
    train.add_argument('--config', type=Path, required=True, help='Network config (JSON)')
    train.add_argument('--data', choices=['mnist', 'folder'], default='mnist',
                       help='Sample source: MNIST IDX files or class-per-folder images')
    train.add_argument('--params', type=Path, help='Start from saved parameters (.npz)')
    train.add_argument('--save', type=Path, help='Save trained parameters (.npz)')
    train.add_argument('--epochs', type=int, default=1, help='Passes over the samples')
    train.add_argument('--plot', action='store_true', help='Plot training history')
    train.set_defaults(func=cmd_train)

    test = subparsers.add_parser('test', help='Evaluate saved parameters')
    test.add_argument('--config', type=Path, required=True, help='Network config (JSON)')
    test.add_argument('--params', type=Path, required=True, help='Saved parameters (.npz)')
    test.add_argument('--data', choices=['mnist', 'folder'], default='mnist',
                      help='Sample source: MNIST IDX files or class-per-folder images')
    test.add_argument('--plot', action='store_true', help='Plot the confusion matrix')
    test.set_defaults(func=cmd_test)

    schedule = subparsers.add_parser('schedule', help='Print the learning-rate schedule')
    schedule.add_argument('--config', type=Path, required=True, help='Network config (JSON)')
    schedule.add_argument('--samples', type=int, help='Last sample count to show')
    schedule.add_argument('--points', type=int, default=20, help='Number of rows to print')
    schedule.add_argument('--plot', action='store_true', help='Plot the schedule')
    schedule.set_defaults(func=cmd_schedule)

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    try:
        return args.func(args)
    except (ConvoNetError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
